"""
Shared fixtures and configuration for the rjax test suite.

The suite runs in float64: several regression values (for example the
normal log density 1e13 standard deviations out) are only exact there.
"""

import jax
import jax.numpy as jnp
import jax.random as jrand
import pytest

jax.config.update("jax_enable_x64", True)

from rjax import beta, bernoulli, gen, normal  # noqa: E402


# ============================================================================
# Random Key Fixtures
# ============================================================================


@pytest.fixture
def base_key():
    """Base random key for reproducible tests."""
    return jrand.PRNGKey(42)


@pytest.fixture
def key_sequence(base_key):
    """Sequence of 10 split random keys."""
    return jrand.split(base_key, 10)


# ============================================================================
# Test Tolerance Fixtures
# ============================================================================


@pytest.fixture
def finite_diff_step():
    """Step for central finite differences."""
    return 1e-6


@pytest.fixture
def gradient_tolerance():
    """Tolerance when comparing gradients to finite differences."""
    return 1e-4


@pytest.fixture
def standard_tolerance():
    """Standard tolerance for most numerical tests."""
    return 1e-6


@pytest.fixture
def convergence_tolerance():
    """Tolerance for convergence tests with inherent variance."""
    return 0.05


# ============================================================================
# Common Model Fixtures
# ============================================================================


@pytest.fixture
def simple_normal_model():
    """Simple normal distribution model."""

    @gen
    def model(mu, sigma):
        x = normal(mu, sigma) @ "x"
        return x

    return model


@pytest.fixture
def hierarchical_normal_model():
    """Hierarchical normal model for update and inference tests."""

    @gen
    def model(prior_mean, prior_std, obs_std):
        mu = normal(prior_mean, prior_std) @ "mu"
        y = normal(mu, obs_std) @ "y"
        return y

    return model


@pytest.fixture
def beta_bernoulli_model():
    """Conjugate Beta-Bernoulli model; the posterior of p is Beta(a + heads, b + tails)."""

    @gen
    def model(a, b, n):
        p = beta(a, b) @ "p"
        for i in range(n):
            bernoulli(p) @ ("obs", i)
        return p

    return model


@pytest.fixture
def dimension_changing_model():
    """A model whose number of choices depends on a discrete choice."""

    @gen
    def model():
        n = int(bernoulli(0.5) @ "two")
        xs = [normal(0.0, 1.0) @ ("x", i) for i in range(n + 1)]
        return jnp.array(xs)

    return model


# ============================================================================
# Test Utilities
# ============================================================================


class TestHelpers:
    """Collection of helper methods for tests."""

    @staticmethod
    def finite_diff(f, args, i, dx):
        """Central difference of `f` in its `i`-th (scalar) argument."""
        pos = list(args)
        neg = list(args)
        pos[i] = args[i] + dx
        neg[i] = args[i] - dx
        return (f(*pos) - f(*neg)) / (2 * dx)

    @staticmethod
    def finite_diff_vec(f, args, i, j, dx):
        """Central difference of `f` in entry `j` (an index or index tuple) of argument `i`."""
        pos = list(args)
        neg = list(args)
        arg = jnp.asarray(args[i], dtype=jnp.float64)
        pos[i] = arg.at[j].add(dx)
        neg[i] = arg.at[j].add(-dx)
        return (f(*pos) - f(*neg)) / (2 * dx)

    @staticmethod
    def finite_diff_mat_sym(f, args, i, r, c, dx):
        """Central difference in a symmetric matrix argument.

        Entries (r, c) and (c, r) move together, matching a gradient that is
        reported symmetrically.
        """
        pos = list(args)
        neg = list(args)
        arg = jnp.asarray(args[i], dtype=jnp.float64)
        pos[i] = arg.at[r, c].add(dx).at[c, r].add(dx)
        neg[i] = arg.at[r, c].add(-dx).at[c, r].add(-dx)
        return (f(*pos) - f(*neg)) / (4 * dx)

    @staticmethod
    def assert_close(actual, expected, rtol=1e-4, atol=1e-6, msg=""):
        """Assert that values are finite and close to expected."""
        assert jnp.all(jnp.isfinite(actual)), f"Values not finite: {actual} {msg}"
        assert jnp.allclose(actual, expected, rtol=rtol, atol=atol), (
            f"{actual} != {expected} (rtol={rtol}) {msg}"
        )

    @staticmethod
    def assert_valid_trace(trace):
        """Assert that a trace has a finite score."""
        score = trace.get_score()
        assert jnp.isfinite(score), f"Trace score not finite: {score}"


@pytest.fixture
def helpers():
    """Test helper utilities."""
    return TestHelpers()


# ============================================================================
# Pytest Hooks and Configuration
# ============================================================================


def pytest_collection_modifyitems(config, items):
    """Add markers based on file names and test names."""
    for item in items:
        if "test_distributions" in item.fspath.basename:
            item.add_marker(pytest.mark.distributions)
        elif "test_mcmc" in item.fspath.basename:
            item.add_marker(pytest.mark.mcmc)
        elif "test_changepoint" in item.fspath.basename:
            item.add_marker(pytest.mark.rj)

        if "convergence" in item.name or "long_run" in item.name:
            item.add_marker(pytest.mark.slow)
