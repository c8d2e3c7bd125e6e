"""
Metropolis-Hastings kernels, including involutive and reversible-jump moves.

The central kernel is `involutive_mh`. It takes a proposal (a generative
function over auxiliary choices, called with the current trace) and an
involution that maps (trace, forward choices) to (new trace, backward
choices). The involution returns the model's incremental weight plus the
log absolute Jacobian determinant of any continuous reparameterization it
performs, so dimension-changing (reversible-jump) moves fit the same
contract as fixed-dimension ones.

`mh` (regenerate selected choices from the prior) and `proposal_mh`
(custom proposal over model addresses) are special cases built on the
same accept/reject step.

References
----------

**Metropolis-Hastings Algorithm:**
- Metropolis, N., Rosenbluth, A. W., Rosenbluth, M. N., Teller, A. H., & Teller, E. (1953).
  "Equation of state calculations by fast computing machines."
  The Journal of Chemical Physics, 21(6), 1087-1092.
- Hastings, W. K. (1970). "Monte Carlo sampling methods using Markov chains and their applications."
  Biometrika, 57(1), 97-109.

**Reversible jump and involutive MCMC:**
- Green, P. J. (1995). "Reversible jump Markov chain Monte Carlo computation and Bayesian
  model determination." Biometrika, 82(4), 711-732.
- Cusumano-Towner, M., Lew, A. K., & Mansinghka, V. K. (2020). "Automating Involutive MCMC
  using Probabilistic and Differentiable Programming." arXiv:2007.09871.

**Implementation Reference:**
- Gen.jl MH implementation: https://github.com/probcomp/Gen.jl/blob/master/src/inference/mh.jl
"""

import logging

import jax.numpy as jnp
import jax.random as jrand

from rjax.core import (
    AddressError,
    Any,
    Callable,
    ChoiceMap,
    EngineContractViolation,
    Fn,
    PRNGKey,
    Selection,
    ShapeMismatch,
    Trace,
    Weight,
)
from rjax.distributions import uniform

logger = logging.getLogger(__name__)

# (trace, fwd_choices, fwd_retval, proposal_args) -> (new_trace, bwd_choices, weight)
Involution = Callable[[Trace, ChoiceMap, Any, tuple], tuple[Trace, ChoiceMap, Weight]]

# key, trace -> (trace, accepted)
MCMCKernel = Callable[[PRNGKey, Trace], tuple[Trace, bool]]


def _accept(key: PRNGKey, log_alpha: Weight) -> bool:
    """Accept with probability min(1, exp(log_alpha))."""
    if bool(jnp.isnan(log_alpha)):
        logger.warning("Acceptance log-ratio is NaN; rejecting the proposal")
        return False
    log_u = jnp.log(uniform.sample(key, 0.0, 1.0))
    return bool(log_u < log_alpha)


def mh(
    key: PRNGKey,
    current_trace: Trace,
    selection: Selection,
) -> tuple[Trace, bool]:
    """
    Single Metropolis-Hastings step that regenerates `selection` from the prior.

    Args:
        key: Randomness for the proposal and the accept/reject draw.
        current_trace: Current trace state.
        selection: Addresses to regenerate (subset of choices).

    Returns:
        The next trace and whether the proposal was accepted.
    """
    regen_key, accept_key = jrand.split(key)
    target_gf = current_trace.get_gen_fn()

    # Regenerate selected addresses - weight is log acceptance probability
    new_trace, log_weight, _ = target_gf.regenerate(regen_key, current_trace, selection)

    accept = _accept(accept_key, log_weight)
    logger.debug("mh %s: log_alpha=%s", "accepted" if accept else "rejected", log_weight)
    return (new_trace if accept else current_trace), accept


def _choices_close(a: ChoiceMap, b: ChoiceMap, atol: float) -> bool:
    a, b = ChoiceMap(a), ChoiceMap(b)
    if set(a) != set(b):
        return False
    for address in a:
        x, y = jnp.asarray(a[address]), jnp.asarray(b[address])
        if x.shape != y.shape:
            return False
        if not jnp.issubdtype(x.dtype, jnp.inexact):
            # Discrete choices must come back exactly.
            if not bool(jnp.array_equal(x, y)):
                return False
        elif not bool(jnp.allclose(x, y, rtol=0.0, atol=atol)):
            return False
    return True


def _check_round_trip(
    trace: Trace,
    fwd_choices: ChoiceMap,
    new_trace: Trace,
    bwd_choices: ChoiceMap,
    bwd_retval: Any,
    proposal_args: tuple,
    involution: Involution,
    atol: float,
) -> None:
    round_trip, fwd_again, _ = involution(new_trace, bwd_choices, bwd_retval, proposal_args)
    if not _choices_close(round_trip.get_choices(), trace.get_choices(), atol):
        raise EngineContractViolation(
            "Involution is not an involution: applying it twice did not "
            "reproduce the model choices",
            trace=trace,
        )
    if not _choices_close(fwd_again, fwd_choices, atol):
        raise EngineContractViolation(
            "Involution is not an involution: applying it twice did not "
            "reproduce the forward proposal choices",
            trace=trace,
        )


def involutive_mh(
    key: PRNGKey,
    trace: Trace,
    proposal: Fn,
    proposal_args: tuple,
    involution: Involution,
    *,
    check: bool = False,
    atol: float = 1e-8,
) -> tuple[Trace, bool]:
    """
    Metropolis-Hastings with an involutive proposal.

    One step proceeds as follows:

    1. Simulate forward choices from `proposal` given `(trace, *proposal_args)`.
    2. Apply the involution: `(new_trace, bwd_choices, weight)`, where
       `weight` is the trace update weight plus `log|det J|`.
    3. Assess the backward choices under `(new_trace, *proposal_args)`.
    4. Accept iff `log(u) < weight + bwd_logp - fwd_logp`.

    Args:
        key: Randomness for the proposal and the accept/reject draw.
        trace: Current trace.
        proposal: Generative function over auxiliary choices. Its first
            argument is the trace it is proposing from.
        proposal_args: Extra arguments passed to the proposal.
        involution: Function `(trace, fwd_choices, fwd_retval, proposal_args)
            -> (new_trace, bwd_choices, weight)`.
        check: Apply the involution a second time and verify that it
            reproduces the original trace and forward choices.
        atol: Absolute tolerance for `check`.

    Returns:
        The next trace and whether the proposal was accepted.

    Raises:
        EngineContractViolation: The proposal, the involution or the backward
            assessment hit an address or shape error, or `check` found the
            involution does not invert itself.
            The exception carries the unchanged input trace.
    """
    proposal_key, accept_key = jrand.split(key)
    try:
        fwd_trace = proposal.simulate(proposal_key, (trace, *proposal_args))
        fwd_choices = fwd_trace.get_choices()
        fwd_score = fwd_trace.get_score()
        new_trace, bwd_choices, weight = involution(
            trace, fwd_choices, fwd_trace.get_retval(), proposal_args
        )
        bwd_score, bwd_retval = proposal.assess(bwd_choices, (new_trace, *proposal_args))
        if check:
            _check_round_trip(
                trace,
                fwd_choices,
                new_trace,
                ChoiceMap(bwd_choices),
                bwd_retval,
                proposal_args,
                involution,
                atol,
            )
    except (AddressError, ShapeMismatch) as e:
        raise EngineContractViolation(
            f"Proposal and involution do not fit together: {e}", trace=trace
        ) from e

    log_alpha = weight + bwd_score - fwd_score
    accept = _accept(accept_key, log_alpha)
    logger.debug(
        "involutive mh %s: log_alpha=%s", "accepted" if accept else "rejected", log_alpha
    )
    return (new_trace if accept else trace), accept


def _update_involution(trace, fwd_choices, fwd_retval, proposal_args):
    new_trace, weight, discard = trace.update(fwd_choices)
    return new_trace, discard, weight


def proposal_mh(
    key: PRNGKey,
    trace: Trace,
    proposal: Fn,
    proposal_args: tuple = (),
    *,
    check: bool = False,
) -> tuple[Trace, bool]:
    """
    Metropolis-Hastings with a custom proposal over model addresses.

    The proposal's choices are written into the trace with `update`; the
    values they replace become the backward choices. Every address the
    updated model visits must either be kept or be proposed.
    """
    return involutive_mh(
        key, trace, proposal, proposal_args, _update_involution, check=check
    )
