"""Probability distributions with sampling, log densities and gradients.

Every distribution here is a `Distribution`: an immutable bundle of a
keyful sampler, a log density, and (optionally) a closed-form gradient of
the log density. Distributions hold no state, so a single instance can be
shared between any number of chains; randomness always arrives through an
explicit `jax.random` key.

Conventions shared by all distributions:

* `logpdf` returns exactly `-inf` outside the support. It never raises for
  out-of-range parameters, only for structural problems such as vectors of
  mismatched length (`InvalidParameter`) or incompatible shapes
  (`ShapeMismatch`).
* `sample` raises `InvalidParameter` for parameters outside their domain.
* `logpdf_grad` returns one entry per argument, value first. Arguments that
  are discrete or otherwise not differentiable get `None`, never zero.
* Validation only runs on concrete values; under `jax.jit` it is skipped.

Most distributions differentiate `logpdf` with `jax.grad`. `normal`,
`broadcasted_normal` and `mvnormal` have closed-form gradients so that
extreme inputs (e.g. a 1e13 standard deviation outlier) stay exact.
"""

import jax
import jax.numpy as jnp
import jax.random as jrand
from jax.scipy.special import betaln, gammaln, xlog1py, xlogy
from tensorflow_probability.substrates import jax as tfp

from rjax.broadcast import align, broadcast_shapes, reduce_to_shape
from rjax.core import (
    Any,
    Callable,
    Const,
    Density,
    InvalidParameter,
    PRNGKey,
    Pytree,
    ShapeMismatch,
    Thunk,
    const,
)

tfd = tfp.distributions

_LOG_2PI = jnp.log(2 * jnp.pi)


###############
# Validation  #
###############


def check_parameter(condition, message: str, error=InvalidParameter) -> None:
    """Raise `error(message)` unless `condition` holds everywhere.

    Conditions that depend on traced values cannot be decided, so the check
    is skipped inside `jax.jit` and other transformations.
    """
    try:
        ok = bool(jnp.all(condition))
    except jax.errors.ConcretizationTypeError:
        return
    if not ok:
        raise error(message)


def _float(x):
    return jnp.asarray(x, dtype=jnp.result_type(float))


def _edges(dtype):
    """Smallest positive and largest below-one representable values."""
    finfo = jnp.finfo(dtype)
    return finfo.tiny, jnp.nextafter(jnp.asarray(1.0, dtype), jnp.asarray(0.0, dtype))


################
# Distribution #
################


@Pytree.dataclass
class Distribution(Pytree):
    """A probability law with sampling, log density, and log density gradient.

    Calling a distribution on its parameters returns a `Thunk`; inside a
    generative function, `thunk @ address` records a random choice:

        >>> from rjax import gen, normal
        >>> @gen
        ... def model():
        ...     return normal(0.0, 1.0) @ "x"

    Attributes:
        _sample: Sampler `(key, *params) -> value`.
        _logpdf: Log density `(value, *params) -> scalar`.
        _logpdf_grad: Optional closed-form gradient with the same arguments.
        name: Name used in error messages.
        has_output_grad: Whether the log density is differentiable in the value.
        has_argument_grads: Per-parameter differentiability, or `None` when
            every parameter is differentiable and the arity is not fixed.
    """

    _sample: Const[Callable[..., Any]]
    _logpdf: Const[Callable[..., Density]]
    _logpdf_grad: Const[Callable[..., tuple] | None]
    name: Const[str | None]
    has_output_grad: bool = Pytree.static(default=True)
    has_argument_grads: tuple | None = Pytree.static(default=None)

    def _check_arity(self, args: tuple):
        n = self.has_argument_grads
        if n is not None and len(args) != len(n):
            raise TypeError(
                f"{self.name.value or 'distribution'} takes {len(n)} parameters, "
                f"got {len(args)}"
            )

    def sample(self, key: PRNGKey, *args) -> Any:
        """Draw one value using `key`."""
        self._check_arity(args)
        return self._sample.value(key, *args)

    def logpdf(self, x, *args) -> Density:
        """Log density (or mass) of `x`; `-inf` outside the support."""
        self._check_arity(args)
        return self._logpdf.value(x, *args)

    def logpdf_grad(self, x, *args) -> tuple:
        """Gradient of `logpdf` with respect to the value and each parameter.

        Entries for non-differentiable arguments are `None`.
        """
        self._check_arity(args)
        if self._logpdf_grad.value is not None:
            return self._logpdf_grad.value(x, *args)
        flags = self.has_argument_grads
        if flags is None:
            flags = (True,) * len(args)
        return _autodiff_grad(
            self._logpdf.value, (self.has_output_grad, *flags), (x, *args)
        )

    def __call__(self, *args) -> Thunk:
        return Thunk(self, args)


def _autodiff_grad(logpdf: Callable, flags: tuple, values: tuple) -> tuple:
    argnums = tuple(i for i, flag in enumerate(flags) if flag)
    if not argnums:
        return (None,) * len(values)
    values = tuple(_float(v) if flag else v for v, flag in zip(values, flags))
    grads = jax.grad(logpdf, argnums=argnums)(*values)
    out = [None] * len(values)
    for i, g in zip(argnums, grads):
        out[i] = g
    return tuple(out)


def distribution(
    sampler: Callable[..., Any],
    logpdf: Callable[..., Any],
    /,
    name: str | None = None,
    *,
    has_output_grad: bool = True,
    has_argument_grads: tuple | None = None,
    logpdf_grad: Callable[..., tuple] | None = None,
) -> Distribution:
    """Create a Distribution from sampling and log probability functions.

    This is the extension point for user-defined distributions.

    Args:
        sampler: Function `(key, *params) -> value`.
        logpdf: Function `(value, *params) -> log density`.
        name: Optional name for the distribution.
        has_output_grad: Whether the value is differentiable.
        has_argument_grads: One flag per parameter, or `None` for "all".
        logpdf_grad: Optional closed-form gradient; defaults to `jax.grad`.

    Returns:
        A `Distribution`.
    """
    return Distribution(
        _sample=const(sampler),
        _logpdf=const(logpdf),
        _logpdf_grad=const(logpdf_grad),
        name=const(name),
        has_output_grad=has_output_grad,
        has_argument_grads=(
            None if has_argument_grads is None else tuple(has_argument_grads)
        ),
    )


# Mostly, just use TFP.
def tfp_distribution(
    dist: Callable[..., "tfd.Distribution"],
    /,
    name: str | None = None,
    *,
    has_output_grad: bool = True,
    has_argument_grads: tuple | None = None,
) -> Distribution:
    """Create a Distribution from a TensorFlow Probability constructor.

    Example:
        >>> from tensorflow_probability.substrates import jax as tfp
        >>> from rjax import tfp_distribution
        >>>
        >>> student_t = tfp_distribution(tfp.distributions.StudentT, name="StudentT")
    """

    def keyful_sampler(key, *args):
        return dist(*args).sample(seed=key)

    def logpdf(v, *args):
        return jnp.sum(dist(*args).log_prob(v))

    return distribution(
        keyful_sampler,
        logpdf,
        name=name,
        has_output_grad=has_output_grad,
        has_argument_grads=has_argument_grads,
    )


###########################
# Discrete distributions  #
###########################


def _bernoulli_sample(key, prob):
    check_parameter((prob >= 0) & (prob <= 1), f"bernoulli: prob must be in [0, 1], got {prob}")
    return jrand.bernoulli(key, prob)


def _bernoulli_logpdf(x, prob):
    x = jnp.asarray(x, dtype=bool)
    valid = (prob >= 0) & (prob <= 1)
    p = jnp.where(valid, prob, 0.5)
    return jnp.where(valid, jnp.where(x, jnp.log(p), jnp.log1p(-p)), -jnp.inf)


bernoulli = distribution(
    _bernoulli_sample,
    _bernoulli_logpdf,
    name="Bernoulli",
    has_output_grad=False,
    has_argument_grads=(True,),
)
"""Bernoulli distribution over `{False, True}`.

Mathematical Formulation:
    PMF: P(X = true) = p, P(X = false) = 1 - p

Args:
    prob: Probability p ∈ [0, 1] of `True`.
"""


def _categorical_sample(key, probs):
    probs = jnp.asarray(probs)
    check_parameter(probs >= 0, "categorical: probabilities must be non-negative")
    check_parameter(jnp.sum(probs) > 0, "categorical: probabilities must have a positive total")
    # Zero-probability categories get logit -inf and are never drawn,
    # so a vector like [1, 0] always yields 1.
    return jrand.categorical(key, jnp.log(probs)) + 1


def _categorical_logpdf(x, probs):
    probs = jnp.asarray(probs)
    n = probs.shape[-1]
    x = jnp.asarray(x)
    valid = (x >= 1) & (x <= n)
    idx = jnp.clip(x - 1, 0, n - 1).astype(int)
    return jnp.where(valid, jnp.log(probs[idx]), -jnp.inf)


categorical = distribution(
    _categorical_sample,
    _categorical_logpdf,
    name="Categorical",
    has_output_grad=False,
    has_argument_grads=(True,),
)
"""Categorical distribution over the 1-based indices `{1, ..., n}`.

Mathematical Formulation:
    PMF: P(X = k) = p_k for k ∈ {1, ..., n}

The log mass is `log(probs[k-1])`: probabilities are used as given, so the
gradient with respect to `probs` is `1 / p_k` at the observed index and zero
elsewhere.

Args:
    probs: Vector of probabilities (n,).
"""


def _uniform_discrete_sample(key, low, high):
    check_parameter(low <= high, f"uniform_discrete: need low <= high, got ({low}, {high})")
    return jrand.randint(key, (), low, high + 1)


def _uniform_discrete_logpdf(x, low, high):
    valid = (x >= low) & (x <= high)
    return jnp.where(valid, -jnp.log(_float(high - low + 1)), -jnp.inf)


uniform_discrete = distribution(
    _uniform_discrete_sample,
    _uniform_discrete_logpdf,
    name="UniformDiscrete",
    has_output_grad=False,
    has_argument_grads=(False, False),
)
"""Uniform distribution over the integers `low, ..., high` (inclusive)."""


def _geometric_sample(key, p):
    check_parameter((p > 0) & (p <= 1), f"geometric: p must be in (0, 1], got {p}")
    return tfd.Geometric(probs=p).sample(seed=key).astype(int)


def _geometric_logpdf(x, p):
    valid = (x >= 0) & (p > 0) & (p <= 1)
    ps = jnp.where(valid, p, 0.5)
    xs = _float(jnp.where(valid, x, 0))
    return jnp.where(valid, xlog1py(xs, -ps) + jnp.log(ps), -jnp.inf)


geometric = distribution(
    _geometric_sample,
    _geometric_logpdf,
    name="Geometric",
    has_output_grad=False,
    has_argument_grads=(True,),
)
"""Geometric distribution: the number of failures before the first success.

Mathematical Formulation:
    PMF: P(X = k) = (1-p)^k × p for k ∈ {0, 1, 2, ...}

Args:
    p: Probability of success ∈ (0, 1].
"""


def _binom_sample(key, n, p):
    check_parameter(n >= 0, f"binom: n must be non-negative, got {n}")
    check_parameter((p >= 0) & (p <= 1), f"binom: p must be in [0, 1], got {p}")
    return tfd.Binomial(total_count=_float(n), probs=p).sample(seed=key).astype(int)


def _binom_logpdf(x, n, p):
    valid = (x >= 0) & (x <= n) & (p >= 0) & (p <= 1)
    xs = _float(jnp.where(valid, x, 0))
    ns = _float(n)
    ps = jnp.where(valid, p, 0.5)
    lp = (
        gammaln(ns + 1)
        - gammaln(xs + 1)
        - gammaln(ns - xs + 1)
        + xlogy(xs, ps)
        + xlog1py(ns - xs, -ps)
    )
    return jnp.where(valid, lp, -jnp.inf)


binom = distribution(
    _binom_sample,
    _binom_logpdf,
    name="Binomial",
    has_output_grad=False,
    has_argument_grads=(False, True),
)
"""Binomial distribution: successes in `n` independent trials.

Mathematical Formulation:
    PMF: P(X = k) = C(n, k) × p^k × (1-p)^(n-k) for k ∈ {0, ..., n}

Args:
    n: Number of trials (a count; its gradient is undefined).
    p: Probability of success ∈ [0, 1].
"""


def _neg_binom_sample(key, r, p):
    check_parameter(r > 0, f"neg_binom: r must be positive, got {r}")
    check_parameter((p > 0) & (p <= 1), f"neg_binom: p must be in (0, 1], got {p}")
    # TFP counts successes before `total_count` failures, so swap the roles.
    return tfd.NegativeBinomial(total_count=_float(r), probs=1 - p).sample(seed=key).astype(int)


def _neg_binom_logpdf(x, r, p):
    valid = (x >= 0) & (r > 0) & (p > 0) & (p <= 1)
    xs = _float(jnp.where(valid, x, 0))
    rs = jnp.where(valid, r, 1.0)
    ps = jnp.where(valid, p, 0.5)
    lp = (
        gammaln(xs + rs)
        - gammaln(rs)
        - gammaln(xs + 1)
        + rs * jnp.log(ps)
        + xlog1py(xs, -ps)
    )
    return jnp.where(valid, lp, -jnp.inf)


neg_binom = distribution(
    _neg_binom_sample,
    _neg_binom_logpdf,
    name="NegativeBinomial",
    has_output_grad=False,
    has_argument_grads=(True, True),
)
"""Negative binomial distribution: failures before the `r`-th success.

Mathematical Formulation:
    PMF: P(X = k) = Γ(k+r) / (Γ(r) k!) × p^r × (1-p)^k for k ∈ {0, 1, ...}

`r` may be any positive real and is differentiable.

Args:
    r: Number of successes (> 0).
    p: Probability of success ∈ (0, 1].
"""


def _poisson_sample(key, rate):
    check_parameter(rate >= 0, f"poisson: rate must be non-negative, got {rate}")
    return jrand.poisson(key, rate)


def _poisson_logpdf(x, rate):
    valid = (x >= 0) & (rate >= 0)
    xs = _float(jnp.where(valid, x, 0))
    return jnp.where(valid, xlogy(xs, rate) - rate - gammaln(xs + 1), -jnp.inf)


poisson = distribution(
    _poisson_sample,
    _poisson_logpdf,
    name="Poisson",
    has_output_grad=False,
    has_argument_grads=(True,),
)
"""Poisson distribution for counts.

Mathematical Formulation:
    PMF: P(X = k) = λ^k × e^(-λ) / k! for k ∈ {0, 1, 2, ...}

Args:
    rate: Rate λ ≥ 0.
"""


#############################
# Continuous distributions  #
#############################


def _normal_sample(key, mu, std):
    check_parameter(std > 0, f"normal: std must be positive, got {std}")
    return mu + std * jrand.normal(key, jnp.shape(mu + std))


def _normal_logpdf(x, mu, std):
    valid = std > 0
    s = jnp.where(valid, std, 1.0)
    z = (x - mu) / s
    return jnp.where(valid, -0.5 * z * z - jnp.log(s) - 0.5 * _LOG_2PI, -jnp.inf)


def _normal_logpdf_grad(x, mu, std):
    # Written in the standardized deviate so that huge deviations stay exact.
    z = (_float(x) - mu) / std
    x_grad = -z / std
    mu_grad = z / std
    std_grad = (z * z - 1.0) / std
    return (x_grad, mu_grad, std_grad)


normal = distribution(
    _normal_sample,
    _normal_logpdf,
    name="Normal",
    has_argument_grads=(True, True),
    logpdf_grad=_normal_logpdf_grad,
)
"""Normal (Gaussian) distribution.

Mathematical Formulation:
    PDF: f(x; μ, σ) = (1/(σ√(2π))) × exp(-½((x-μ)/σ)²)

    log f = -½z² - log σ - ½log(2π), with z = (x-μ)/σ

Evaluating through the standardized deviate keeps the log density finite
and exact far out in the tail: at z = 1e13 it is exactly -5e25 in float64.

Args:
    mu: Mean μ.
    std: Standard deviation σ > 0.
"""


def _broadcasted_normal_shapes(x, mu, std):
    param_shape = broadcast_shapes(jnp.shape(mu), jnp.shape(std))
    if x is not None and jnp.shape(x) != param_shape:
        raise ShapeMismatch(
            f"broadcasted_normal: x has shape {jnp.shape(x)}, but the broadcast "
            f"of mu {jnp.shape(mu)} and std {jnp.shape(std)} is {param_shape}"
        )
    return param_shape


def _broadcasted_normal_sample(key, mu, std):
    shape = _broadcasted_normal_shapes(None, mu, std)
    check_parameter(jnp.asarray(std) > 0, "broadcasted_normal: std must be positive")
    mu = align(mu, len(shape))
    std = align(std, len(shape))
    return mu + std * jrand.normal(key, shape)


def _broadcasted_normal_logpdf(x, mu, std):
    shape = _broadcasted_normal_shapes(x, mu, std)
    mu = align(mu, len(shape))
    std = align(std, len(shape))
    return jnp.sum(_normal_logpdf(jnp.asarray(x), mu, std))


def _broadcasted_normal_logpdf_grad(x, mu, std):
    shape = _broadcasted_normal_shapes(x, mu, std)
    x_grad, mu_grad, std_grad = _normal_logpdf_grad(
        jnp.asarray(x), align(mu, len(shape)), align(std, len(shape))
    )
    return (
        reduce_to_shape(x_grad, shape),
        reduce_to_shape(mu_grad, jnp.shape(mu)),
        reduce_to_shape(std_grad, jnp.shape(std)),
    )


broadcasted_normal = distribution(
    _broadcasted_normal_sample,
    _broadcasted_normal_logpdf,
    name="BroadcastedNormal",
    has_argument_grads=(True, True),
    logpdf_grad=_broadcasted_normal_logpdf_grad,
)
"""Array of independent normals with broadcast `mu` and `std`.

The value has the (leading-aligned) broadcast shape of `mu` and `std`, see
`rjax.broadcast`. `logpdf` sums the pointwise log densities and requires
`x` to have exactly that shape. Each gradient has the shape of the argument
it belongs to; implicitly expanded axes are summed out.

Args:
    mu: Array of means.
    std: Array of standard deviations (> 0).
"""


def _mvnormal_check(x, mu, cov):
    mu = jnp.asarray(mu)
    cov = jnp.asarray(cov)
    if mu.ndim != 1:
        raise ShapeMismatch(f"mvnormal: mu must be a vector, got shape {mu.shape}")
    d = mu.shape[0]
    if cov.shape != (d, d):
        raise ShapeMismatch(f"mvnormal: cov must have shape {(d, d)}, got {cov.shape}")
    if x is not None and jnp.shape(x) != (d,):
        raise ShapeMismatch(f"mvnormal: x must have shape {(d,)}, got {jnp.shape(x)}")
    return mu, cov


def _is_spd(cov):
    return jnp.allclose(cov, cov.T) & jnp.all(jnp.isfinite(jnp.linalg.cholesky(cov)))


def _mvnormal_sample(key, mu, cov):
    mu, cov = _mvnormal_check(None, mu, cov)
    check_parameter(
        _is_spd(cov),
        "mvnormal: cov must be symmetric positive definite",
    )
    return jrand.multivariate_normal(key, mu, cov)


def _mvnormal_logpdf(x, mu, cov):
    mu, cov = _mvnormal_check(x, mu, cov)
    d = mu.shape[0]
    sign, logdet = jnp.linalg.slogdet(cov)
    r = jnp.asarray(x) - mu
    lp = -0.5 * (r @ jnp.linalg.solve(cov, r) + logdet + d * _LOG_2PI)
    return jnp.where(_is_spd(cov) & (sign > 0), lp, -jnp.inf)


def _mvnormal_logpdf_grad(x, mu, cov):
    mu, cov = _mvnormal_check(x, mu, cov)
    inv_cov = jnp.linalg.inv(cov)
    r = _float(x) - mu
    x_grad = -inv_cov @ r
    cov_grad = 0.5 * (jnp.outer(x_grad, x_grad) - inv_cov)
    return (x_grad, -x_grad, 0.5 * (cov_grad + cov_grad.T))


mvnormal = distribution(
    _mvnormal_sample,
    _mvnormal_logpdf,
    name="MultivariateNormal",
    has_argument_grads=(True, True),
    logpdf_grad=_mvnormal_logpdf_grad,
)
"""Multivariate normal distribution.

Mathematical Formulation:
    log f(x; μ, Σ) = -½[(x-μ)ᵀ Σ⁻¹ (x-μ) + log|Σ| + d log(2π)]

    ∂/∂x = -Σ⁻¹(x-μ)
    ∂/∂Σ = ½[Σ⁻¹(x-μ)(x-μ)ᵀΣ⁻¹ - Σ⁻¹]

The covariance gradient is symmetric: entry (i, j) equals entry (j, i).

Args:
    mu: Mean vector (d,).
    cov: Covariance matrix (d, d), symmetric positive definite.
"""


def _beta_sample(key, alpha, beta):
    check_parameter((alpha > 0) & (beta > 0), f"beta: parameters must be positive, got ({alpha}, {beta})")
    return jrand.beta(key, alpha, beta)


def _beta_logpdf(x, alpha, beta):
    x = _float(x)
    tiny, below_one = _edges(x.dtype)
    valid = (x >= 0) & (x <= 1) & (alpha > 0) & (beta > 0)
    vanishes = ((x == 0) & (alpha > 1)) | ((x == 1) & (beta > 1))
    # A diverging edge is evaluated at the nearest interior point.
    xc = jnp.clip(x, tiny, below_one)
    a = jnp.where(valid, alpha, 1.0)
    b = jnp.where(valid, beta, 1.0)
    lp = xlogy(a - 1, xc) + xlog1py(b - 1, -xc) - betaln(a, b)
    return jnp.where(valid & ~vanishes, lp, -jnp.inf)


beta = distribution(
    _beta_sample,
    _beta_logpdf,
    name="Beta",
    has_argument_grads=(True, True),
)
"""Beta distribution on [0, 1].

Mathematical Formulation:
    PDF: f(x; α, β) = x^(α-1) × (1-x)^(β-1) / B(α, β)

At x = 0 (and symmetrically at 1) the log density is the interior limit
when it is finite, `-inf` when the density vanishes (α > 1), and the value
at the smallest positive float when it diverges (α < 1). The last case is
finite and larger than the value one machine epsilon inside.

Args:
    alpha: First shape parameter α > 0.
    beta: Second shape parameter β > 0.
"""


def _gamma_sample(key, shape, scale):
    check_parameter((shape > 0) & (scale > 0), f"gamma: parameters must be positive, got ({shape}, {scale})")
    return jrand.gamma(key, shape) * scale


def _gamma_logpdf(x, shape, scale):
    x = _float(x)
    tiny, _ = _edges(x.dtype)
    valid = (x >= 0) & (shape > 0) & (scale > 0)
    vanishes = (x == 0) & (shape > 1)
    xc = jnp.maximum(x, tiny)
    k = jnp.where(valid, shape, 1.0)
    s = jnp.where(valid, scale, 1.0)
    lp = xlogy(k - 1, xc) - xc / s - gammaln(k) - k * jnp.log(s)
    return jnp.where(valid & ~vanishes, lp, -jnp.inf)


gamma = distribution(
    _gamma_sample,
    _gamma_logpdf,
    name="Gamma",
    has_argument_grads=(True, True),
)
"""Gamma distribution in the shape/scale parameterization.

Mathematical Formulation:
    PDF: f(x; k, θ) = x^(k-1) × e^(-x/θ) / (Γ(k) θ^k) for x ≥ 0

    Mean: 𝔼[X] = kθ

Args:
    shape: Shape k > 0.
    scale: Scale θ > 0.
"""


def _inv_gamma_sample(key, shape, scale):
    check_parameter((shape > 0) & (scale > 0), f"inv_gamma: parameters must be positive, got ({shape}, {scale})")
    return tfd.InverseGamma(concentration=_float(shape), scale=_float(scale)).sample(seed=key)


def _inv_gamma_logpdf(x, shape, scale):
    valid = (x > 0) & (shape > 0) & (scale > 0)
    xs = jnp.where(valid, x, 1.0)
    k = jnp.where(valid, shape, 1.0)
    s = jnp.where(valid, scale, 1.0)
    lp = k * jnp.log(s) - gammaln(k) - (k + 1) * jnp.log(xs) - s / xs
    return jnp.where(valid, lp, -jnp.inf)


inv_gamma = distribution(
    _inv_gamma_sample,
    _inv_gamma_logpdf,
    name="InverseGamma",
    has_argument_grads=(True, True),
)
"""Inverse gamma distribution on (0, ∞).

Mathematical Formulation:
    PDF: f(x; α, β) = β^α / Γ(α) × x^(-α-1) × e^(-β/x)

Args:
    shape: Shape α > 0.
    scale: Scale β > 0.
"""


def _exponential_sample(key, rate):
    check_parameter(rate > 0, f"exponential: rate must be positive, got {rate}")
    return jrand.exponential(key) / rate


def _exponential_logpdf(x, rate):
    valid = (x >= 0) & (rate > 0)
    r = jnp.where(valid, rate, 1.0)
    return jnp.where(valid, jnp.log(r) - r * x, -jnp.inf)


exponential = distribution(
    _exponential_sample,
    _exponential_logpdf,
    name="Exponential",
    has_argument_grads=(True,),
)
"""Exponential distribution with the given rate, on [0, ∞)."""


def _dirichlet_sample(key, alpha):
    alpha = jnp.asarray(alpha)
    check_parameter(alpha > 0, "dirichlet: concentrations must be positive")
    return jrand.dirichlet(key, alpha)


def _dirichlet_logpdf(x, alpha):
    x = _float(x)
    alpha = jnp.asarray(alpha)
    if x.shape != alpha.shape or x.ndim != 1:
        raise ShapeMismatch(
            f"dirichlet: x {x.shape} and alpha {alpha.shape} must be vectors of equal length"
        )
    tolerance = jnp.sqrt(jnp.finfo(x.dtype).eps)
    valid = (
        jnp.all(x > 0)
        & jnp.all(x < 1)
        & (jnp.abs(jnp.sum(x) - 1) <= tolerance)
        & jnp.all(alpha > 0)
    )
    xs = jnp.where(valid, x, 1.0 / x.shape[0])
    a = jnp.where(valid, alpha, 1.0)
    lp = jnp.sum(xlogy(a - 1, xs)) + gammaln(jnp.sum(a)) - jnp.sum(gammaln(a))
    return jnp.where(valid, lp, -jnp.inf)


dirichlet = distribution(
    _dirichlet_sample,
    _dirichlet_logpdf,
    name="Dirichlet",
    has_argument_grads=(True,),
)
"""Dirichlet distribution on the open probability simplex.

Mathematical Formulation:
    PDF: f(x; α) = Γ(Σα_i) / ΠΓ(α_i) × Π x_i^(α_i - 1)

The log density is `-inf` unless every component lies in (0, 1) and the
components sum to one within `sqrt(eps)`. The gradient is taken with
respect to the simplex coordinates directly; callers proposing in an
unconstrained space (e.g. through a softmax) apply the chain rule.

Args:
    alpha: Concentration vector, every entry > 0.
"""


def _uniform_sample(key, low, high):
    check_parameter(low < high, f"uniform: need low < high, got ({low}, {high})")
    return jrand.uniform(key, jnp.shape(low + high), minval=low, maxval=high)


def _uniform_logpdf(x, low, high):
    valid = (x >= low) & (x <= high) & (high > low)
    width = jnp.where(valid, high - low, 1.0)
    return jnp.where(valid, -jnp.log(width), -jnp.inf)


uniform = distribution(
    _uniform_sample,
    _uniform_logpdf,
    name="Uniform",
    has_argument_grads=(True, True),
)
"""Continuous uniform distribution on the closed interval [low, high]."""


def _piecewise_uniform_check(bounds, probs):
    bounds = jnp.asarray(bounds)
    probs = jnp.asarray(probs)
    if bounds.ndim != 1 or probs.ndim != 1 or bounds.shape[0] != probs.shape[0] + 1:
        raise InvalidParameter(
            f"piecewise_uniform: need len(bounds) == len(probs) + 1, got "
            f"{bounds.shape} and {probs.shape}"
        )
    return bounds, probs


def _piecewise_uniform_sample(key, bounds, probs):
    bounds, probs = _piecewise_uniform_check(bounds, probs)
    check_parameter(jnp.diff(bounds) > 0, "piecewise_uniform: bounds must be strictly ascending")
    check_parameter(probs >= 0, "piecewise_uniform: probabilities must be non-negative")
    check_parameter(jnp.sum(probs) > 0, "piecewise_uniform: probabilities must have a positive total")
    bin_key, point_key = jrand.split(key)
    i = jrand.categorical(bin_key, jnp.log(probs))
    return jrand.uniform(point_key, (), minval=bounds[i], maxval=bounds[i + 1])


def _piecewise_uniform_logpdf(x, bounds, probs):
    bounds, probs = _piecewise_uniform_check(bounds, probs)
    n = probs.shape[0]
    i = jnp.clip(jnp.searchsorted(bounds, x, side="right") - 1, 0, n - 1)
    inside = (x >= bounds[0]) & (x <= bounds[-1])
    width = bounds[i + 1] - bounds[i]
    valid = inside & (width > 0)
    lp = jnp.log(probs[i]) - jnp.log(jnp.where(valid, width, 1.0))
    return jnp.where(valid, lp, -jnp.inf)


piecewise_uniform = distribution(
    _piecewise_uniform_sample,
    _piecewise_uniform_logpdf,
    name="PiecewiseUniform",
    has_argument_grads=(True, True),
)
"""Piecewise constant density over consecutive bins.

Mathematical Formulation:
    PDF: f(x) = p_i / (b_{i+1} - b_i) for x in bin i = [b_i, b_{i+1})

The right edge of the last bin is included.

Args:
    bounds: Strictly ascending bin edges (n+1,).
    probs: Bin probabilities (n,).
"""


def _beta_uniform_sample(key, theta, alpha, beta_):
    check_parameter((theta >= 0) & (theta <= 1), f"beta_uniform: theta must be in [0, 1], got {theta}")
    mix_key, value_key = jrand.split(key)
    from_beta = jrand.bernoulli(mix_key, theta)
    return jnp.where(
        from_beta,
        _beta_sample(value_key, alpha, beta_),
        jrand.uniform(value_key),
    )


def _beta_uniform_logpdf(x, theta, alpha, beta_):
    x = _float(x)
    inside = (x >= 0) & (x <= 1) & (theta >= 0) & (theta <= 1)
    t = jnp.where(inside, theta, 0.5)
    lp = jnp.logaddexp(
        jnp.log(t) + _beta_logpdf(x, alpha, beta_),
        jnp.log1p(-t),
    )
    return jnp.where(inside, lp, -jnp.inf)


beta_uniform = distribution(
    _beta_uniform_sample,
    _beta_uniform_logpdf,
    name="BetaUniform",
    has_argument_grads=(True, True, True),
)
"""Mixture of a Beta and a Uniform(0, 1) distribution.

Mathematical Formulation:
    PDF: f(x; θ, α, β) = θ × Beta(x; α, β) + (1 - θ)

Args:
    theta: Weight θ ∈ [0, 1] of the Beta component.
    alpha: Beta shape α > 0.
    beta: Beta shape β > 0.
"""


def _laplace_sample(key, loc, scale):
    check_parameter(scale > 0, f"laplace: scale must be positive, got {scale}")
    return loc + scale * jrand.laplace(key, jnp.shape(loc + scale))


def _laplace_logpdf(x, loc, scale):
    valid = scale > 0
    s = jnp.where(valid, scale, 1.0)
    return jnp.where(valid, -jnp.abs(x - loc) / s - jnp.log(2 * s), -jnp.inf)


laplace = distribution(
    _laplace_sample,
    _laplace_logpdf,
    name="Laplace",
    has_argument_grads=(True, True),
)
"""Laplace distribution: f(x) = exp(-|x - loc| / scale) / (2 scale)."""


def _cauchy_sample(key, loc, scale):
    check_parameter(scale > 0, f"cauchy: scale must be positive, got {scale}")
    return loc + scale * jrand.cauchy(key, jnp.shape(loc + scale))


def _cauchy_logpdf(x, loc, scale):
    valid = scale > 0
    s = jnp.where(valid, scale, 1.0)
    z = (x - loc) / s
    return jnp.where(valid, -jnp.log(jnp.pi * s) - jnp.log1p(z * z), -jnp.inf)


cauchy = distribution(
    _cauchy_sample,
    _cauchy_logpdf,
    name="Cauchy",
    has_argument_grads=(True, True),
)
"""Cauchy distribution with location `loc` and scale `scale`."""


##########################################
# Distributions for change point models  #
##########################################


def _min_uniform_sample(key, lower, upper, k):
    check_parameter(lower < upper, f"min_uniform_continuous: need lower < upper, got ({lower}, {upper})")
    check_parameter(k >= 1, f"min_uniform_continuous: k must be at least 1, got {k}")
    u = jrand.uniform(key)
    return upper - (upper - lower) * (1.0 - u) ** (1.0 / k)


def _min_uniform_logpdf(x, lower, upper, k):
    valid = (x > lower) & (x < upper) & (k >= 1)
    xs = jnp.where(valid, x, 0.5 * (lower + upper))
    lp = (
        xlogy(_float(k) - 1, upper - xs)
        + jnp.log(jnp.where(valid, k, 1))
        - k * jnp.log(jnp.where(valid, upper - lower, 1.0))
    )
    return jnp.where(valid, lp, -jnp.inf)


min_uniform_continuous = distribution(
    _min_uniform_sample,
    _min_uniform_logpdf,
    name="MinUniformContinuous",
    has_argument_grads=(True, True, False),
)
"""Minimum of `k` independent draws from Uniform(lower, upper).

Mathematical Formulation:
    log f(x) = (k-1) log(upper - x) + log k - k log(upper - lower)
    for x ∈ (lower, upper)

Sampled by inverse CDF: `upper - (upper - lower) × (1 - U)^(1/k)`.

Sorted draws of k uniforms can be generated one at a time, each from this
distribution with the previous draw as `lower` and one fewer draw remaining:

    x1 ~ min_uniform_continuous(a, b, k)
    x2 ~ min_uniform_continuous(x1, b, k - 1)
    ...

Args:
    lower: Lower end of the open interval.
    upper: Upper end of the open interval.
    k: Number of uniform draws (a count; its gradient is undefined).
"""


def _poisson_process_check(bounds, rates):
    bounds = jnp.asarray(bounds)
    rates = jnp.asarray(rates)
    if bounds.ndim != 1 or rates.ndim != 1 or bounds.shape[0] != rates.shape[0] + 1:
        raise InvalidParameter(
            "piecewise_poisson_process: number of bounds must be number of "
            f"rates plus one, got {bounds.shape[0]} and {rates.shape[0]}"
        )
    return bounds, rates


def _poisson_process_sample(key, bounds, rates):
    bounds, rates = _poisson_process_check(bounds, rates)
    check_parameter(jnp.diff(bounds) > 0, "piecewise_poisson_process: bounds must be strictly ascending")
    check_parameter(rates >= 0, "piecewise_poisson_process: rates must be non-negative")
    points = []
    for i in range(rates.shape[0]):
        key, count_key, point_key = jrand.split(key, 3)
        lower, upper = bounds[i], bounds[i + 1]
        n = int(jrand.poisson(count_key, (upper - lower) * rates[i]))
        points.append(jrand.uniform(point_key, (n,), minval=lower, maxval=upper))
    return jnp.concatenate(points)


def _poisson_process_logpdf(x, bounds, rates):
    bounds, rates = _poisson_process_check(bounds, rates)
    x = jnp.asarray(x)
    n = rates.shape[0]
    lengths = jnp.diff(bounds)
    ascending = jnp.all(lengths > 0)
    inside = jnp.all((x >= bounds[0]) & (x <= bounds[-1]))
    # Intervals are (b_i, b_{i+1}]: a point on an interior bound belongs below it.
    i = jnp.clip(jnp.searchsorted(bounds, x, side="left") - 1, 0, n - 1)
    lp = jnp.sum(jnp.log(rates[i])) - jnp.sum(lengths * rates)
    return jnp.where(ascending & inside, lp, -jnp.inf)


piecewise_poisson_process = distribution(
    _poisson_process_sample,
    _poisson_process_logpdf,
    name="PiecewisePoissonProcess",
    has_argument_grads=(True, True),
)
"""Poisson process with a piecewise constant rate.

For n intervals there are n + 1 bounds, and interval i is (b_i, b_{i+1}]
with rate r_i. The value is the vector of event times, in any order.

Mathematical Formulation:
    log f(x) = Σ_j log r_{i(x_j)} - Σ_i (b_{i+1} - b_i) r_i

The log density is `-inf` when some point lies outside [b_0, b_n] or the
bounds are not strictly ascending.

Args:
    bounds: Interval edges (n+1,).
    rates: Interval rates (n,), each ≥ 0.
"""
