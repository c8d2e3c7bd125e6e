"""Driving MCMC kernels: chain configuration, single chains, and replicates.

A kernel is any function `kernel(key, trace) -> (trace, accepts)`, where
`accepts` is a bool or a dict mapping move names to bools (`None` marks a
move that was not attempted on this step). Each chain owns its key and its
trace, so independent chains can run on a thread pool without sharing
anything.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import jax.numpy as jnp
import jax.random as jrand

from rjax.core import (
    Any,
    Callable,
    EngineContractViolation,
    FloatArray,
    PRNGKey,
    Pytree,
    Trace,
)

logger = logging.getLogger(__name__)

Kernel = Callable[[PRNGKey, Trace], tuple[Trace, Any]]


@dataclass(frozen=True)
class ChainConfig:
    """Settings for one Markov chain.

    Attributes:
        num_steps: Total number of kernel applications.
        burn_in: Steps discarded before collecting samples.
        thin: Collect every `thin`-th step after burn-in.
        log_every: Log progress every this many steps (0 disables).
        seed: Seed for `key()`.
    """

    num_steps: int
    burn_in: int = 0
    thin: int = 1
    log_every: int = 0
    seed: int = 0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise `ValueError` listing every invalid setting."""
        errors = []
        if self.num_steps < 0:
            errors.append(f"num_steps must be >= 0, got {self.num_steps}")
        if self.burn_in < 0:
            errors.append(f"burn_in must be >= 0, got {self.burn_in}")
        if self.burn_in > self.num_steps:
            errors.append(
                f"burn_in ({self.burn_in}) must not exceed num_steps ({self.num_steps})"
            )
        if self.thin < 1:
            errors.append(f"thin must be >= 1, got {self.thin}")
        if self.log_every < 0:
            errors.append(f"log_every must be >= 0, got {self.log_every}")
        if errors:
            raise ValueError("Invalid chain configuration:\n  " + "\n  ".join(errors))

    def key(self) -> PRNGKey:
        return jrand.PRNGKey(self.seed)

    @property
    def num_samples(self) -> int:
        return (self.num_steps - self.burn_in) // self.thin


@Pytree.dataclass
class ChainResult(Pytree):
    """Result of running one chain."""

    trace: Trace  # Final state of the chain
    samples: tuple  # Collected values, one per kept step
    acceptance_rates: dict  # Move name -> fraction of attempts accepted


def _as_accept_dict(accepts) -> dict:
    if isinstance(accepts, dict):
        return accepts
    return {"mh": accepts}


def run_chain(
    key: PRNGKey,
    kernel: Kernel,
    trace: Trace,
    config: ChainConfig,
    collect: Callable[[Trace], Any] | None = None,
) -> ChainResult:
    """Apply `kernel` for `config.num_steps` steps starting from `trace`.

    Args:
        key: Chain-local randomness; split once per step.
        kernel: Function `(key, trace) -> (trace, accepts)`.
        trace: Initial state.
        config: Step counts, burn-in and thinning.
        collect: Maps a kept trace to the stored sample (default: the trace).

    Returns:
        A `ChainResult` with the final trace, the collected samples, and
        per-move acceptance rates.

    Raises:
        EngineContractViolation: Propagated from the kernel. The chain stops;
            the exception's `trace` is the last good state.
    """
    collect = (lambda tr: tr) if collect is None else collect
    samples = []
    attempts: dict[str, int] = {}
    accepted: dict[str, int] = {}

    for step in range(1, config.num_steps + 1):
        key, step_key = jrand.split(key)
        try:
            trace, accepts = kernel(step_key, trace)
        except EngineContractViolation:
            logger.error("Chain halted at step %d of %d", step, config.num_steps)
            raise

        for name, accept in _as_accept_dict(accepts).items():
            if accept is None:
                continue
            attempts[name] = attempts.get(name, 0) + 1
            accepted[name] = accepted.get(name, 0) + int(bool(accept))

        if step > config.burn_in and (step - config.burn_in) % config.thin == 0:
            samples.append(collect(trace))

        if config.log_every and step % config.log_every == 0:
            logger.info("step %d of %d", step, config.num_steps)

    rates = {name: accepted[name] / attempts[name] for name in attempts}
    return ChainResult(trace, tuple(samples), rates)


def run_chains(
    key: PRNGKey,
    kernel: Kernel,
    init: Trace | Callable[[PRNGKey], Trace],
    config: ChainConfig,
    n_chains: int,
    collect: Callable[[Trace], Any] | None = None,
    max_workers: int | None = None,
) -> list[ChainResult]:
    """Run `n_chains` independent replicate chains.

    Args:
        key: Split once per chain; each chain owns its key.
        kernel: Function `(key, trace) -> (trace, accepts)`.
        init: A starting trace shared by all chains, or a function
            `key -> trace` producing one per chain.
        config: Settings applied to every chain.
        n_chains: Number of replicates.
        collect: As in `run_chain`.
        max_workers: Run chains on a thread pool of this size. `None` runs
            them one after another.

    Returns:
        One `ChainResult` per chain, in chain order.
    """
    if n_chains < 1:
        raise ValueError(f"n_chains must be >= 1, got {n_chains}")

    def one_chain(chain_key):
        init_key, chain_key = jrand.split(chain_key)
        trace = init(init_key) if callable(init) else init
        return run_chain(chain_key, kernel, trace, config, collect)

    chain_keys = list(jrand.split(key, n_chains))
    logger.info("Running %d chains of %d steps", n_chains, config.num_steps)
    if max_workers is None:
        return [one_chain(k) for k in chain_keys]
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(one_chain, chain_keys))


def compute_rhat(samples: jnp.ndarray) -> FloatArray:
    """
    Compute potential scale reduction factor (R-hat) across replicate chains.

    Mathematical Formulation:
        Given M chains each of length N, compute:

        B = N/(M-1) * Σᵢ (θ̄ᵢ - θ̄)²  (between-chain variance)
        W = 1/M * Σᵢ sᵢ²             (within-chain variance)

        R̂ = √[((N-1)/N * W + 1/N * B) / W]

    Args:
        samples: Array of shape (n_chains, n_samples) of a scalar statistic.

    Returns:
        R-hat statistic; values close to 1.0 indicate convergence.
        NaN if there are fewer than 2 chains.

    References:
        .. [1] Gelman, A., & Rubin, D. B. (1992). "Inference from iterative
               simulation using multiple sequences". Statistical Science, 7(4), 457-472.
    """
    samples = jnp.asarray(samples)
    n_chains, n_samples = samples.shape
    if n_chains < 2:
        return jnp.nan

    chain_means = jnp.mean(samples, axis=1)
    B = n_samples * jnp.var(chain_means, ddof=1)
    W = jnp.mean(jnp.var(samples, axis=1, ddof=1))
    var_plus = ((n_samples - 1) * W + B) / n_samples
    return jnp.sqrt(var_plus / W)
