"""
Test cases for Metropolis-Hastings kernels.

These tests validate:
- The involutive MH contract: errors in the proposal/involution pairing are
  reported as EngineContractViolation carrying the unchanged trace
- Round-trip checking of involutions
- Accept/reject edge cases (zero, -inf and NaN log-ratios)
- Convergence of mh, proposal_mh and involutive_mh to the posterior mean
  and variance of a conjugate model
"""

import logging

import jax.numpy as jnp
import jax.random as jrand
import pytest

from rjax import AddressError, ChoiceMap, EngineContractViolation, gen, normal, sel
from rjax.inference import ChainConfig, involutive_mh, mh, proposal_mh, run_chain

DATA = [True, True, False, True, True, True, False, True, False, True]
HEADS = sum(DATA)
TAILS = len(DATA) - HEADS
PRIOR_A, PRIOR_B = 2.0, 2.0
POSTERIOR_MEAN = (PRIOR_A + HEADS) / (PRIOR_A + PRIOR_B + len(DATA))
POSTERIOR_VAR = (
    (PRIOR_A + HEADS)
    * (PRIOR_B + TAILS)
    / ((PRIOR_A + PRIOR_B + len(DATA)) ** 2 * (PRIOR_A + PRIOR_B + len(DATA) + 1))
)
# Relative error allowed on the posterior variance of a correlated chain.
VARIANCE_RTOL = 0.35


@gen
def nothing(trace):
    return None


@gen
def random_walk(trace, width):
    return normal(trace["p"], width) @ "p"


@gen
def shift_proposal(trace, width):
    return normal(0.0, width) @ "d"


def shift_involution(trace, fwd_choices, fwd_retval, proposal_args):
    d = fwd_choices["d"]
    new_trace, weight, _ = trace.update({"p": trace["p"] + d})
    return new_trace, ChoiceMap({"d": -d}), weight


def broken_shift_involution(trace, fwd_choices, fwd_retval, proposal_args):
    d = fwd_choices["d"]
    new_trace, weight, _ = trace.update({"p": trace["p"] + d})
    # Not an involution: applying it twice moves p by 2d.
    return new_trace, ChoiceMap({"d": d}), weight


@pytest.fixture
def coin_trace(base_key, beta_bernoulli_model):
    constraints = {("obs", i): x for i, x in enumerate(DATA)}
    constraints["p"] = 0.5
    tr, _ = beta_bernoulli_model.generate(
        base_key, constraints, (PRIOR_A, PRIOR_B, len(DATA))
    )
    return tr


# =============================================================================
# ACCEPT / REJECT
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_zero_log_ratio_is_always_accepted(key_sequence, simple_normal_model):
    tr, _ = simple_normal_model.generate(None, {"x": 0.7}, (0.0, 1.0))

    def negate(trace, fwd_choices, fwd_retval, proposal_args):
        new_trace, weight, _ = trace.update({"x": -trace["x"]})
        return new_trace, ChoiceMap(), weight

    for key in key_sequence:
        new_tr, accepted = involutive_mh(key, tr, nothing, (), negate, check=True)
        assert accepted
        assert new_tr["x"] == -tr["x"]
        tr = new_tr


@pytest.mark.unit
@pytest.mark.fast
def test_impossible_proposal_is_rejected(key_sequence, coin_trace):
    def outside(trace, fwd_choices, fwd_retval, proposal_args):
        new_trace, weight, _ = trace.update({"p": 1.5})
        return new_trace, ChoiceMap(), weight

    for key in key_sequence:
        new_tr, accepted = involutive_mh(key, coin_trace, nothing, (), outside)
        assert not accepted
        assert new_tr is coin_trace


@pytest.mark.unit
@pytest.mark.fast
def test_nan_log_ratio_is_rejected_with_warning(base_key, coin_trace, caplog):
    def nan_weight(trace, fwd_choices, fwd_retval, proposal_args):
        new_trace, _, _ = trace.update({"p": 0.6})
        return new_trace, ChoiceMap(), jnp.nan

    with caplog.at_level(logging.WARNING, logger="rjax.inference.mcmc"):
        new_tr, accepted = involutive_mh(base_key, coin_trace, nothing, (), nan_weight)
    assert not accepted
    assert new_tr is coin_trace
    assert "NaN" in caplog.text


# =============================================================================
# CONTRACT VIOLATIONS
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_missing_backward_choice_is_a_contract_violation(base_key, coin_trace):
    def forgets_backward(trace, fwd_choices, fwd_retval, proposal_args):
        new_trace, weight, _ = trace.update({"p": trace["p"] + fwd_choices["d"]})
        return new_trace, ChoiceMap(), weight

    with pytest.raises(EngineContractViolation) as excinfo:
        involutive_mh(base_key, coin_trace, shift_proposal, (0.1,), forgets_backward)
    assert excinfo.value.trace is coin_trace


@pytest.mark.unit
@pytest.mark.fast
def test_unknown_model_address_is_a_contract_violation(base_key, coin_trace):
    def writes_elsewhere(trace, fwd_choices, fwd_retval, proposal_args):
        new_trace, weight, _ = trace.update({"q": 0.5})
        return new_trace, ChoiceMap({"d": -fwd_choices["d"]}), weight

    with pytest.raises(EngineContractViolation) as excinfo:
        involutive_mh(base_key, coin_trace, shift_proposal, (0.1,), writes_elsewhere)
    assert excinfo.value.trace is coin_trace


@gen
def reads_missing(trace):
    return normal(trace["missing"], 1.0) @ "d"


@pytest.mark.unit
@pytest.mark.fast
def test_proposal_reading_unknown_address_is_a_contract_violation(
    base_key, coin_trace
):
    with pytest.raises(EngineContractViolation) as excinfo:
        involutive_mh(base_key, coin_trace, reads_missing, (), shift_involution)
    assert excinfo.value.trace is coin_trace
    assert isinstance(excinfo.value.__cause__, AddressError)


@pytest.mark.unit
@pytest.mark.fast
def test_round_trip_check(key_sequence, coin_trace):
    trace = coin_trace
    for key in key_sequence:
        trace, _ = involutive_mh(
            key, trace, shift_proposal, (0.05,), shift_involution, check=True
        )

    with pytest.raises(EngineContractViolation, match="not an involution"):
        involutive_mh(
            key_sequence[0],
            coin_trace,
            shift_proposal,
            (0.05,),
            broken_shift_involution,
            check=True,
        )


# =============================================================================
# CONVERGENCE
# =============================================================================


def _posterior_moments(key, trace, kernel, num_steps=1500, burn_in=300):
    config = ChainConfig(num_steps=num_steps, burn_in=burn_in)
    result = run_chain(key, kernel, trace, config, collect=lambda tr: tr["p"])
    assert len(result.samples) == num_steps - burn_in
    samples = jnp.array(result.samples)
    return float(jnp.mean(samples)), float(jnp.var(samples)), result


def assert_posterior_moments(mean, var, tolerance):
    assert abs(mean - POSTERIOR_MEAN) < tolerance
    assert abs(var - POSTERIOR_VAR) < VARIANCE_RTOL * POSTERIOR_VAR


@pytest.mark.integration
def test_mh_convergence(coin_trace, convergence_tolerance):
    mean, var, result = _posterior_moments(
        jrand.PRNGKey(1), coin_trace, lambda k, tr: mh(k, tr, sel("p"))
    )
    assert_posterior_moments(mean, var, convergence_tolerance)
    assert 0.0 < result.acceptance_rates["mh"] < 1.0
    # Observations never move.
    _, observed = result.trace.get_choices().filter(sel("p"))
    _, initially_observed = coin_trace.get_choices().filter(sel("p"))
    assert observed == initially_observed


@pytest.mark.integration
def test_proposal_mh_convergence(coin_trace, convergence_tolerance):
    mean, var, _ = _posterior_moments(
        jrand.PRNGKey(2),
        coin_trace,
        lambda k, tr: proposal_mh(k, tr, random_walk, (0.2,)),
    )
    assert_posterior_moments(mean, var, convergence_tolerance)


@pytest.mark.integration
def test_involutive_mh_convergence(coin_trace, convergence_tolerance):
    mean, var, _ = _posterior_moments(
        jrand.PRNGKey(3),
        coin_trace,
        lambda k, tr: involutive_mh(k, tr, shift_proposal, (0.2,), shift_involution),
    )
    assert_posterior_moments(mean, var, convergence_tolerance)
