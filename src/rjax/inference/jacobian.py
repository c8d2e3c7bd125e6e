"""Jacobian corrections for involutive and reversible-jump proposals.

When an involution reparameterizes continuous coordinates, the acceptance
ratio needs `log|det J|`, where J is the Jacobian of the coordinate map
restricted to the coordinates it changes. This module makes the way J is
obtained pluggable: forward-mode or reverse-mode automatic differentiation,
or a hand-written Jacobian.

The convention for a coordinate map `fn: R^n -> R^m` is that its first
`m` inputs are the coordinates being replaced and the remaining `n - m`
inputs are held fixed (they parameterize the map). Only the square block
`J[:, :m]` enters the determinant.

References:
    .. [1] Green, P. J. (1995). "Reversible jump Markov chain Monte Carlo
           computation and Bayesian model determination". Biometrika, 82(4).
    .. [2] Cusumano-Towner, M., Lew, A. K., & Mansinghka, V. K. (2020).
           "Automating Involutive MCMC using Probabilistic and Differentiable
           Programming". arXiv:2007.09871.
"""

import logging
from abc import abstractmethod

import jax
import jax.numpy as jnp

from rjax.core import (
    Callable,
    Const,
    EngineContractViolation,
    FloatArray,
    Pytree,
    const,
)

logger = logging.getLogger(__name__)


##################
# Differentiators #
##################


class Differentiator(Pytree):
    """Strategy for computing the Jacobian of a coordinate map."""

    @abstractmethod
    def jacobian(self, fn: Callable, x: FloatArray) -> FloatArray:
        pass


@Pytree.dataclass
class ForwardMode(Differentiator):
    """Forward-mode automatic differentiation (`jax.jacfwd`)."""

    def jacobian(self, fn: Callable, x: FloatArray) -> FloatArray:
        return jax.jacfwd(fn)(x)


@Pytree.dataclass
class ReverseMode(Differentiator):
    """Reverse-mode automatic differentiation (`jax.jacrev`)."""

    def jacobian(self, fn: Callable, x: FloatArray) -> FloatArray:
        return jax.jacrev(fn)(x)


@Pytree.dataclass
class Analytic(Differentiator):
    """A hand-written Jacobian `jacobian_fn(x) -> J`."""

    jacobian_fn: Const[Callable[[FloatArray], FloatArray]]

    def jacobian(self, fn: Callable, x: FloatArray) -> FloatArray:
        return jnp.asarray(self.jacobian_fn.value(x))


forward_mode = ForwardMode()
reverse_mode = ReverseMode()


def analytic(jacobian_fn: Callable[[FloatArray], FloatArray]) -> Analytic:
    return Analytic(const(jacobian_fn))


###########################
# Log absolute determinant #
###########################


def log_abs_det_jacobian(
    fn: Callable[[FloatArray], FloatArray],
    x: FloatArray,
    n_changed: int,
    differentiator: Differentiator = reverse_mode,
) -> FloatArray:
    """Compute `log|det J[:, :n_changed]|` for `fn` at `x`.

    Args:
        fn: Coordinate map from a vector to a vector of length `n_changed`.
        x: Point at which to differentiate.
        n_changed: Number of leading inputs replaced by the outputs.
        differentiator: How to obtain J.

    Raises:
        EngineContractViolation: If the block is not square or is singular.
            Either means the map is not a bijection on the changed
            coordinates, which is an error in the proposal, not a rejection.
    """
    x = jnp.asarray(x, dtype=jnp.result_type(float))
    J = jnp.atleast_2d(differentiator.jacobian(fn, x))
    block = J[:, :n_changed]
    if block.shape != (n_changed, n_changed):
        raise EngineContractViolation(
            f"Jacobian block must be {n_changed}x{n_changed}, got shape {block.shape}"
        )
    sign, logdet = jnp.linalg.slogdet(block)
    if not bool(sign != 0) or not bool(jnp.isfinite(logdet)):
        raise EngineContractViolation(
            f"Jacobian of the changed coordinates is singular at {x}"
        )
    logger.debug("log|det J| = %s", logdet)
    return logdet


#############
# Bijection #
#############


@Pytree.dataclass
class Bijection(Pytree):
    """A coordinate map paired with its inverse and a Jacobian strategy.

    Both directions take a vector whose first `n_changed` entries are the
    coordinates being transformed, followed by fixed context values shared
    by both directions. They return only the `n_changed` new coordinates.

    Example:
        >>> import jax.numpy as jnp
        >>> from rjax.core import const
        >>> scale = Bijection(
        ...     forward=const(lambda v: v[:1] * v[1]),
        ...     inverse=const(lambda v: v[:1] / v[1]),
        ...     n_changed=1,
        ... )
        >>> y, logdet = scale.apply(jnp.array([2.0, 3.0]))
    """

    forward: Const[Callable[[FloatArray], FloatArray]]
    inverse: Const[Callable[[FloatArray], FloatArray]]
    n_changed: int = Pytree.static()
    differentiator: Differentiator = Pytree.field(default=reverse_mode)

    def apply(self, x: FloatArray) -> tuple[FloatArray, FloatArray]:
        """Map `x` forward; returns the new coordinates and `log|det J|`."""
        y = self.forward.value(x)
        return y, log_abs_det_jacobian(
            self.forward.value, x, self.n_changed, self.differentiator
        )

    def apply_inverse(self, y: FloatArray) -> tuple[FloatArray, FloatArray]:
        """Map `y` back; returns the old coordinates and `log|det J|` of the inverse."""
        x = self.inverse.value(y)
        return x, log_abs_det_jacobian(
            self.inverse.value, y, self.n_changed, self.differentiator
        )
