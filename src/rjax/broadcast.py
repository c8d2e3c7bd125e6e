"""Shape inference and gradient reduction for array-valued distributions.

Shapes align from the *leading* dimension: a shorter shape is padded with
trailing unit dimensions before the usual size-1 expansion. So `(2, 3)` is
compatible with `(2, 3, 1)` but not with `(1, 2, 3)`. This is the opposite
padding direction from NumPy, whose arrays align from the trailing end.

Example:
    >>> broadcast_shapes((1, 3), (2, 1, 1))
    (2, 3, 1)
"""

import jax.numpy as jnp

from rjax.core import Array, ArrayLike, ShapeMismatch

Shape = tuple[int, ...]


def broadcast_shapes(*shapes: Shape) -> Shape:
    """Broadcast shapes with leading alignment.

    Raises:
        ShapeMismatch: If some dimension disagrees and neither size is 1.
    """
    if not shapes:
        return ()
    ndim = max(len(s) for s in shapes)
    padded = [tuple(s) + (1,) * (ndim - len(s)) for s in shapes]
    result = []
    for axis in range(ndim):
        sizes = {p[axis] for p in padded} - {1}
        if len(sizes) > 1:
            raise ShapeMismatch(
                f"Shapes {', '.join(str(tuple(s)) for s in shapes)} cannot be "
                f"broadcast: dimension {axis} has sizes {sorted(sizes)}"
            )
        result.append(sizes.pop() if sizes else 1)
    return tuple(result)


def align(array: ArrayLike, ndim: int) -> Array:
    """Append trailing unit axes so `array` has `ndim` dimensions."""
    array = jnp.asarray(array)
    if array.ndim > ndim:
        raise ShapeMismatch(
            f"Cannot align an array of shape {array.shape} to {ndim} dimensions"
        )
    return jnp.reshape(array, array.shape + (1,) * (ndim - array.ndim))


def broadcast_to(array: ArrayLike, shape: Shape) -> Array:
    """Expand `array` to `shape` under leading alignment."""
    shape = tuple(shape)
    array = jnp.asarray(array)
    broadcast_shapes(array.shape, shape)
    return jnp.broadcast_to(align(array, len(shape)), shape)


def reduce_to_shape(grad: ArrayLike, shape: Shape) -> Array:
    """Sum a pointwise gradient over the axes that broadcasting expanded.

    The result has exactly `shape`, including the 0-d case.
    """
    grad = jnp.asarray(grad)
    shape = tuple(shape)
    padded = shape + (1,) * (grad.ndim - len(shape))
    axes = tuple(
        axis
        for axis, (size, target) in enumerate(zip(grad.shape, padded))
        if target == 1 and size != 1
    )
    if axes:
        grad = jnp.sum(grad, axis=axes, keepdims=True)
    return jnp.reshape(grad, shape)
