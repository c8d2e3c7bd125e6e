"""
rjax extras - Models and move libraries built on the core modules.

This module contains worked reversible-jump samplers that build on rjax
distributions and inference, but are not part of the generic engine.
"""

from .changepoint import (
    # Model
    ChangepointPrior,
    changepoint_model,
    initial_trace,
    num_changepoints,
    # Moves
    height_move,
    position_move,
    birth_death_move,
    split_heights,
    merge_heights,
    height_bijection,
    # Kernels
    mcmc_step,
    simple_mcmc_step,
    # Summaries
    rate_curve,
    posterior_mean_rate,
)

__all__ = [
    # Model
    "ChangepointPrior",
    "changepoint_model",
    "initial_trace",
    "num_changepoints",
    # Moves
    "height_move",
    "position_move",
    "birth_death_move",
    "split_heights",
    "merge_heights",
    "height_bijection",
    # Kernels
    "mcmc_step",
    "simple_mcmc_step",
    # Summaries
    "rate_curve",
    "posterior_mean_rate",
]
