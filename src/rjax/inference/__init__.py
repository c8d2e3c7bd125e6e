"""Inference algorithms for rjax.

This module provides Metropolis-Hastings kernels (selection-based, custom
proposal, and involutive / reversible-jump), the Jacobian corrections they
need, and a driver for running chains.
"""

from .chain import ChainConfig, ChainResult, compute_rhat, run_chain, run_chains
from .jacobian import (
    Analytic,
    Bijection,
    Differentiator,
    ForwardMode,
    ReverseMode,
    analytic,
    forward_mode,
    log_abs_det_jacobian,
    reverse_mode,
)
from .mcmc import involutive_mh, mh, proposal_mh

__all__ = [
    # MCMC
    "mh",
    "proposal_mh",
    "involutive_mh",
    # Jacobians
    "Differentiator",
    "ForwardMode",
    "ReverseMode",
    "Analytic",
    "forward_mode",
    "reverse_mode",
    "analytic",
    "log_abs_det_jacobian",
    "Bijection",
    # Chains
    "ChainConfig",
    "ChainResult",
    "run_chain",
    "run_chains",
    "compute_rhat",
]
