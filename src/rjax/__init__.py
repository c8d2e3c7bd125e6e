"""rjax: probability distributions and reversible-jump MCMC on JAX.

The core pieces are:

* `rjax.distributions`: distributions with sampling, log densities and
  log density gradients.
* `rjax.core`: addresses, choice maps, traces and `@gen` functions.
* `rjax.inference`: Metropolis-Hastings kernels, including involutive
  and reversible-jump moves, and a chain driver.
"""

from .core import (
    Address,
    AddressError,
    ChoiceMap,
    Const,
    EngineContractViolation,
    Fn,
    InvalidParameter,
    Pytree,
    RJaxError,
    Selection,
    ShapeMismatch,
    Thunk,
    Tr,
    Trace,
    addr,
    choice_map,
    const,
    gen,
    no_change,
    sel,
    unknown_change,
)
from .distributions import (
    Distribution,
    bernoulli,
    beta,
    beta_uniform,
    binom,
    broadcasted_normal,
    categorical,
    cauchy,
    dirichlet,
    distribution,
    exponential,
    gamma,
    geometric,
    inv_gamma,
    laplace,
    min_uniform_continuous,
    mvnormal,
    neg_binom,
    normal,
    piecewise_poisson_process,
    piecewise_uniform,
    poisson,
    tfp_distribution,
    uniform,
    uniform_discrete,
)

__all__ = [
    # Core
    "Pytree",
    "Const",
    "const",
    "Address",
    "addr",
    "ChoiceMap",
    "choice_map",
    "Selection",
    "sel",
    "Trace",
    "Tr",
    "Fn",
    "gen",
    "Thunk",
    "no_change",
    "unknown_change",
    # Errors
    "RJaxError",
    "InvalidParameter",
    "ShapeMismatch",
    "AddressError",
    "EngineContractViolation",
    # Distributions
    "Distribution",
    "distribution",
    "tfp_distribution",
    "bernoulli",
    "beta",
    "beta_uniform",
    "binom",
    "broadcasted_normal",
    "categorical",
    "cauchy",
    "dirichlet",
    "exponential",
    "gamma",
    "geometric",
    "inv_gamma",
    "laplace",
    "min_uniform_continuous",
    "mvnormal",
    "neg_binom",
    "normal",
    "piecewise_poisson_process",
    "piecewise_uniform",
    "poisson",
    "uniform",
    "uniform_discrete",
]
