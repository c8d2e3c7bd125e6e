"""
Tests for leading-aligned shape broadcasting and gradient reduction,
and for the shape rules of `broadcasted_normal` built on them.
"""

import jax.numpy as jnp
import jax.random as jrand
import pytest

from rjax.broadcast import align, broadcast_shapes, broadcast_to, reduce_to_shape
from rjax.core import ShapeMismatch
from rjax.distributions import broadcasted_normal, normal


# =============================================================================
# SHAPE INFERENCE
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize(
    "shapes,expected",
    [
        (((), ()), ()),
        (((3,), ()), (3,)),
        (((2, 3), (2, 3)), (2, 3)),
        (((2, 1), (1, 3)), (2, 3)),
        (((2,), (2, 3)), (2, 3)),
        (((1, 3), (2, 1, 1)), (2, 3, 1)),
        (((2, 3), (2, 3, 1)), (2, 3, 1)),
    ],
)
def test_broadcast_shapes(shapes, expected):
    assert broadcast_shapes(*shapes) == expected


@pytest.mark.unit
@pytest.mark.fast
def test_broadcast_shapes_pads_trailing_not_leading():
    # NumPy would accept (3,) against (2, 3); leading alignment does not.
    with pytest.raises(ShapeMismatch):
        broadcast_shapes((3,), (2, 3))
    with pytest.raises(ShapeMismatch):
        broadcast_shapes((2, 3), (1, 2, 3))


@pytest.mark.unit
@pytest.mark.fast
def test_broadcast_shapes_no_arguments():
    assert broadcast_shapes() == ()


@pytest.mark.unit
@pytest.mark.fast
def test_align_and_broadcast_to():
    assert align(jnp.ones(2), 3).shape == (2, 1, 1)
    assert align(1.0, 2).shape == (1, 1)
    with pytest.raises(ShapeMismatch):
        align(jnp.ones((2, 2)), 1)

    expanded = broadcast_to(jnp.array([1.0, 2.0]), (2, 3))
    assert expanded.shape == (2, 3)
    assert jnp.array_equal(expanded[:, 2], jnp.array([1.0, 2.0]))


# =============================================================================
# GRADIENT REDUCTION
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_reduce_to_shape():
    grad = jnp.arange(6.0).reshape(2, 3)
    assert jnp.array_equal(reduce_to_shape(grad, (2, 3)), grad)
    assert jnp.array_equal(reduce_to_shape(grad, (2, 1)), jnp.array([[3.0], [12.0]]))
    assert jnp.array_equal(reduce_to_shape(grad, (1, 3)), jnp.array([[3.0, 5.0, 7.0]]))
    assert jnp.array_equal(reduce_to_shape(grad, (2,)), jnp.array([3.0, 12.0]))
    scalar = reduce_to_shape(grad, ())
    assert scalar.shape == ()
    assert scalar == 15.0


# =============================================================================
# BROADCASTED NORMAL SHAPES
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize(
    "mu_shape,std_shape,expected",
    [
        ((), (), ()),
        ((2, 3), (2, 3), (2, 3)),
        ((2, 1), (1, 3), (2, 3)),
        ((2,), (2, 3), (2, 3)),
        ((), (4,), (4,)),
    ],
)
def test_broadcasted_normal_sample_shape(base_key, mu_shape, std_shape, expected):
    x = broadcasted_normal.sample(base_key, jnp.zeros(mu_shape), jnp.ones(std_shape))
    assert x.shape == expected


@pytest.mark.unit
@pytest.mark.fast
def test_broadcasted_normal_incompatible_parameters(base_key):
    with pytest.raises(ShapeMismatch):
        broadcasted_normal.sample(base_key, jnp.zeros(3), jnp.ones((2, 3)))
    with pytest.raises(ShapeMismatch):
        broadcasted_normal.logpdf(jnp.zeros((2, 3)), jnp.zeros(2), jnp.ones(3))


@pytest.mark.unit
@pytest.mark.fast
def test_broadcasted_normal_value_must_have_broadcast_shape():
    mu = jnp.zeros((2, 1))
    std = jnp.ones((1, 3))
    with pytest.raises(ShapeMismatch):
        broadcasted_normal.logpdf(jnp.zeros((2, 1)), mu, std)
    with pytest.raises(ShapeMismatch):
        broadcasted_normal.logpdf_grad(jnp.zeros((3, 2)), mu, std)


@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize(
    "mu_shape,std_shape,x_shape",
    [
        ((2,), (1, 3), (2, 3)),
        ((1, 4), (2, 1, 1), (2, 4, 1)),
    ],
)
def test_broadcasted_normal_compact_equals_expanded(
    base_key, mu_shape, std_shape, x_shape
):
    mu_key, std_key, x_key = jrand.split(base_key, 3)
    mu_compact = jrand.normal(mu_key, mu_shape)
    std_compact = jrand.uniform(std_key, std_shape, minval=0.5, maxval=2.0)
    x = jrand.normal(x_key, x_shape)
    mu_full = broadcast_to(mu_compact, x_shape)
    std_full = broadcast_to(std_compact, x_shape)

    compact = broadcasted_normal.logpdf(x, mu_compact, std_compact)
    expanded = broadcasted_normal.logpdf(x, mu_full, std_full)
    assert jnp.isclose(compact, expanded)

    pointwise = jnp.sum(normal.logpdf(x, mu_full, std_full))
    assert jnp.isclose(compact, pointwise)

    x_grad, mu_grad, std_grad = broadcasted_normal.logpdf_grad(x, mu_compact, std_compact)
    x_grad_full, mu_grad_full, std_grad_full = broadcasted_normal.logpdf_grad(
        x, mu_full, std_full
    )
    assert x_grad.shape == x_shape
    assert mu_grad.shape == mu_shape
    assert std_grad.shape == std_shape
    assert jnp.allclose(x_grad, x_grad_full)
    assert jnp.allclose(mu_grad, reduce_to_shape(mu_grad_full, mu_shape))
    assert jnp.allclose(std_grad, reduce_to_shape(std_grad_full, std_shape))
    # Expanded axes are summed, not resized.
    assert jnp.isclose(jnp.sum(mu_grad), jnp.sum(mu_grad_full))
    assert jnp.isclose(jnp.sum(std_grad), jnp.sum(std_grad_full))
