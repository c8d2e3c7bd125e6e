"""Reversible-jump MCMC for a piecewise constant Poisson rate.

Event times on [0, T] are modelled as a Poisson process whose rate is
constant between an unknown number `k` of change points:

* `"k"` ~ Poisson(k_rate)
* `("cp", i)` for i in 0..k-1: sorted change points, drawn one at a time as
  the minimum of the remaining uniform draws on (previous, T)
* `("h", j)` for j in 0..k: rate on the j-th segment, Gamma(alpha, 1/beta)
* `"points"`: the event times

Three moves explore the posterior: `height_move` rescales one rate,
`position_move` moves one change point between its neighbours, and
`birth_death_move` adds or removes a change point, splitting or merging
the adjacent rates. The split is a bijection between (h, u) and
(h_prev, h_next) whose Jacobian enters the acceptance ratio.

References:
    .. [1] Green, P. J. (1995). "Reversible jump Markov chain Monte Carlo
           computation and Bayesian model determination". Biometrika, 82(4),
           Section 4 (coal mining disasters).
"""

import logging
from dataclasses import dataclass
from functools import partial

import jax.numpy as jnp
import jax.random as jrand

from rjax.core import (
    ChoiceMap,
    FloatArray,
    PRNGKey,
    Trace,
    const,
    gen,
    sel,
)
from rjax.distributions import (
    bernoulli,
    gamma,
    min_uniform_continuous,
    piecewise_poisson_process,
    poisson,
    uniform,
    uniform_discrete,
)
from rjax.inference.jacobian import Bijection, Differentiator, reverse_mode
from rjax.inference.mcmc import involutive_mh, mh

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangepointPrior:
    """Prior settings for `changepoint_model`."""

    k_rate: float = 3.0  # Mean number of change points
    alpha: float = 1.0  # Gamma shape of each rate
    beta: float = 200.0  # Gamma rate of each rate (scale is 1/beta)


#########
# Model #
#########


@gen
def changepoint_model(T, prior=ChangepointPrior()):
    k = int(poisson(prior.k_rate) @ "k")

    # Sorted change points: the i-th is the minimum of the k - i uniforms left.
    change_pts = []
    lower = 0.0
    for i in range(k):
        cp = min_uniform_continuous(lower, T, k - i) @ ("cp", i)
        change_pts.append(cp)
        lower = cp

    # h_j is the rate between cp_{j-1} and cp_j, with cp_{-1} := 0 and cp_k := T.
    rates = [gamma(prior.alpha, 1.0 / prior.beta) @ ("h", j) for j in range(k + 1)]

    bounds = jnp.array([0.0, *change_pts, T])
    return piecewise_poisson_process(bounds, jnp.array(rates)) @ "points"


def num_changepoints(trace: Trace) -> int:
    return int(trace["k"])


def _changepoint(trace: Trace, i: int):
    """Change point `i`, with the segment ends 0 and T at i = -1 and i = k."""
    if i < 0:
        return 0.0
    if i >= num_changepoints(trace):
        return trace.get_args()[0]
    return trace["cp", i]


def initial_trace(
    key: PRNGKey,
    points: FloatArray,
    T: float,
    prior: ChangepointPrior = ChangepointPrior(),
) -> Trace:
    """Sample a starting trace from the prior with the event times observed."""
    trace, _ = changepoint_model.generate(
        key, {"points": jnp.asarray(points)}, (T, prior)
    )
    return trace


###############
# Height move #
###############


@gen
def height_proposal(trace):
    k = num_changepoints(trace)
    i = uniform_discrete(0, k) @ "i"
    height = trace["h", i]
    return uniform(height / 2.0, height * 2.0) @ "height"


def height_involution(trace, fwd_choices, fwd_retval, proposal_args):
    i = int(fwd_choices["i"])
    new_trace, weight, _ = trace.update({("h", i): fwd_choices["height"]})
    bwd_choices = ChoiceMap({"i": i, "height": trace["h", i]})
    return new_trace, bwd_choices, weight


def height_move(key: PRNGKey, trace: Trace, check: bool = False):
    return involutive_mh(key, trace, height_proposal, (), height_involution, check=check)


#################
# Position move #
#################


@gen
def position_proposal(trace):
    k = num_changepoints(trace)
    i = int(uniform_discrete(0, k - 1) @ "i")
    lower = _changepoint(trace, i - 1)
    upper = _changepoint(trace, i + 1)
    return uniform(lower, upper) @ "cp"


def position_involution(trace, fwd_choices, fwd_retval, proposal_args):
    i = int(fwd_choices["i"])
    new_trace, weight, _ = trace.update({("cp", i): fwd_choices["cp"]})
    bwd_choices = ChoiceMap({"i": i, "cp": trace["cp", i]})
    return new_trace, bwd_choices, weight


def position_move(key: PRNGKey, trace: Trace, check: bool = False):
    return involutive_mh(
        key, trace, position_proposal, (), position_involution, check=check
    )


######################
# Birth / death move #
######################


def split_heights(v: FloatArray) -> FloatArray:
    """`[h, u, cp_new, cp_prev, cp_next] -> [h_prev, h_next]`.

    The new rates keep the length-weighted geometric mean of the old one,
    and `u` sets their ratio: `h_prev / (h_prev + h_next) = u`.
    """
    cur_height, u, cur_cp, prev_cp, next_cp = v
    d_prev = cur_cp - prev_cp
    d_next = next_cp - cur_cp
    d_total = d_prev + d_next
    log_ratio = jnp.log1p(-u) - jnp.log(u)
    prev_height = jnp.exp(jnp.log(cur_height) - (d_next / d_total) * log_ratio)
    next_height = jnp.exp(jnp.log(cur_height) + (d_prev / d_total) * log_ratio)
    return jnp.stack([prev_height, next_height])


def merge_heights(v: FloatArray) -> FloatArray:
    """`[h_prev, h_next, cp_new, cp_prev, cp_next] -> [h, u]`, inverting `split_heights`."""
    prev_height, next_height, cur_cp, prev_cp, next_cp = v
    d_prev = cur_cp - prev_cp
    d_next = next_cp - cur_cp
    d_total = d_prev + d_next
    cur_height = jnp.exp(
        (d_prev / d_total) * jnp.log(prev_height)
        + (d_next / d_total) * jnp.log(next_height)
    )
    u = prev_height / (prev_height + next_height)
    return jnp.stack([cur_height, u])


def height_bijection(differentiator: Differentiator = reverse_mode) -> Bijection:
    return Bijection(
        forward=const(split_heights),
        inverse=const(merge_heights),
        n_changed=2,
        differentiator=differentiator,
    )


@gen
def birth_death_proposal(trace):
    k = num_changepoints(trace)
    if k == 0:
        # Only a birth is possible.
        isbirth = True
    else:
        isbirth = bool(bernoulli(0.5) @ "isbirth")
    if isbirth:
        i = int(uniform_discrete(0, k) @ "i")
        lower = _changepoint(trace, i - 1)
        upper = _changepoint(trace, i)
        uniform(lower, upper) @ "cp_new"
        uniform(0.0, 1.0) @ "u"
    else:
        uniform_discrete(0, k - 1) @ "i"


def birth_death_involution(
    trace, fwd_choices, fwd_retval, proposal_args, bijection: Bijection | None = None
):
    """Map a birth to the matching death and vice versa."""
    bijection = height_bijection() if bijection is None else bijection
    k = num_changepoints(trace)
    isbirth = k == 0 or bool(fwd_choices["isbirth"])

    bwd = {}
    # The reverse move only chooses birth/death when it has more than zero points.
    if k > 1 or isbirth:
        bwd["isbirth"] = not isbirth
    i = int(fwd_choices["i"])
    bwd["i"] = i

    constraints = {}
    if isbirth:
        constraints["k"] = k + 1
        cp_new = fwd_choices["cp_new"]
        cp_prev = _changepoint(trace, i - 1)
        cp_next = _changepoint(trace, i)
        constraints["cp", i] = cp_new
        for j in range(i + 1, k + 1):
            constraints["cp", j] = trace["cp", j - 1]

        (h_prev, h_next), log_det = bijection.apply(
            jnp.array([trace["h", i], fwd_choices["u"], cp_new, cp_prev, cp_next])
        )
        constraints["h", i] = h_prev
        constraints["h", i + 1] = h_next
        for j in range(i + 2, k + 2):
            constraints["h", j] = trace["h", j - 1]
    else:
        constraints["k"] = k - 1
        cp_new = trace["cp", i]
        cp_prev = _changepoint(trace, i - 1)
        cp_next = _changepoint(trace, i + 1)
        bwd["cp_new"] = cp_new
        for j in range(i, k - 1):
            constraints["cp", j] = trace["cp", j + 1]

        (h_cur, u), log_det = bijection.apply_inverse(
            jnp.array([trace["h", i], trace["h", i + 1], cp_new, cp_prev, cp_next])
        )
        bwd["u"] = u
        constraints["h", i] = h_cur
        for j in range(i + 1, k):
            constraints["h", j] = trace["h", j + 1]

    new_trace, weight, _ = trace.update(constraints)
    return new_trace, ChoiceMap(bwd), weight + log_det


def birth_death_move(
    key: PRNGKey,
    trace: Trace,
    differentiator: Differentiator = reverse_mode,
    check: bool = False,
):
    involution = partial(birth_death_involution, bijection=height_bijection(differentiator))
    return involutive_mh(key, trace, birth_death_proposal, (), involution, check=check)


###########
# Kernels #
###########


def mcmc_step(key: PRNGKey, trace: Trace, differentiator: Differentiator = reverse_mode):
    """One sweep: height move, position move (if k > 0), birth/death move."""
    height_key, position_key, jump_key = jrand.split(key, 3)
    k = num_changepoints(trace)
    trace, height_accept = height_move(height_key, trace)
    position_accept = None
    if k > 0:
        trace, position_accept = position_move(position_key, trace)
    trace, jump_accept = birth_death_move(jump_key, trace, differentiator)
    return trace, {
        "height": height_accept,
        "position": position_accept,
        "birth_death": jump_accept,
    }


k_selection = sel("k")


def simple_mcmc_step(key: PRNGKey, trace: Trace):
    """Like `mcmc_step`, but changes `k` by resampling it from the prior."""
    height_key, position_key, k_key = jrand.split(key, 3)
    k = num_changepoints(trace)
    trace, height_accept = height_move(height_key, trace)
    position_accept = None
    if k > 0:
        trace, position_accept = position_move(position_key, trace)
    trace, k_accept = mh(k_key, trace, k_selection)
    return trace, {"height": height_accept, "position": position_accept, "k": k_accept}


#############
# Summaries #
#############


def rate_curve(trace: Trace, test_points: FloatArray) -> FloatArray:
    """Rate of the piecewise constant intensity at each test point.

    A test point equal to a change point takes the rate of the segment
    below it.
    """
    k = num_changepoints(trace)
    cps = jnp.array([trace["cp", i] for i in range(k)])
    heights = jnp.array([trace["h", j] for j in range(k + 1)])
    segment = jnp.searchsorted(cps, jnp.asarray(test_points), side="left")
    return heights[segment]


def posterior_mean_rate(traces, test_points: FloatArray) -> FloatArray:
    """Average `rate_curve` over a collection of posterior traces."""
    curves = [rate_curve(tr, test_points) for tr in traces]
    if not curves:
        raise ValueError("posterior_mean_rate needs at least one trace")
    logger.debug("Averaging rate curves over %d traces", len(curves))
    return jnp.mean(jnp.stack(curves), axis=0)
