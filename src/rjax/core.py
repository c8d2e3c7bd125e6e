from abc import abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import overload
import operator
import threading

import beartype.typing as btyping
import jax.numpy as jnp
import jax.random as jrand
import jax.tree_util as jtu
import jaxtyping as jtyping
import penzai.pz as pz
from typing_extensions import dataclass_transform

#########
# Types #
#########

Any = btyping.Any
Union = btyping.Union
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
FloatArray = jtyping.Float[jtyping.Array, "..."]
IntArray = jtyping.Int[jtyping.Array, "..."]
BoolArray = jtyping.Bool[jtyping.Array, "..."]
Callable = btyping.Callable
Sequence = btyping.Sequence
Iterable = btyping.Iterable
Optional = btyping.Optional
Generic = btyping.Generic
TypeVar = btyping.TypeVar

A = TypeVar("A")
R = TypeVar("R")

# Scores and weights are log-space scalars.
Weight = FloatArray
Score = FloatArray
Density = FloatArray


##########
# Errors #
##########


class RJaxError(Exception):
    """Base class for errors raised by `rjax`."""


class InvalidParameter(RJaxError, ValueError):
    """Distribution parameters violate a documented constraint."""


class ShapeMismatch(RJaxError, ValueError):
    """Array arguments have shapes that cannot be combined."""


class AddressError(RJaxError, KeyError):
    """An address was missing, visited twice, or left unvisited."""

    def __str__(self):
        return str(self.args[0]) if self.args else ""


class EngineContractViolation(RJaxError):
    """A proposal or involution does not honor the MH step contract.

    The trace the step started from is kept on the exception, so a
    driver can decide whether to continue from it, retry, or halt.
    """

    def __init__(self, message: str, trace: "Trace | None" = None):
        super().__init__(message)
        self.trace = trace


##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system.

    Inheriting this class provides the implementor with the freedom to
    declare how the subfields of a class should behave:

    * `Pytree.static(...)`: the value of the field cannot
    be a JAX traced value, it must be a Python literal, or a constant).
    The values of static fields are embedded in the `PyTreeDef` of any
    instance of the class.
    * `Pytree.field(...)` or no annotation: the value may be a JAX traced
    value, and JAX will attempt to convert it to tracer values inside of
    its transformations.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """
        Denote that a class (which is inheriting `Pytree`) should be treated
        as a dataclass, meaning it can hold data in fields which are
        declared as part of the class.

        Examples
        --------

        >>> from rjax.core import Pytree
        >>> import jax.numpy as jnp
        >>>
        >>> @Pytree.dataclass
        ... class MyClass(Pytree):
        ...     my_static_field: int = Pytree.static()
        ...     my_dynamic_field: jnp.ndarray
        >>>
        >>> instance = MyClass(10, jnp.array(5.0))
        >>> instance.my_static_field
        10
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic.
        Alternatively, one can leave the annotation off in the declaration."""
        return field(**kwargs)


@Pytree.dataclass
class Const(Generic[A], Pytree):
    """A Pytree wrapper for Python values that should remain static.

    Functions stored on a `Pytree` (samplers, log densities, model sources)
    are wrapped in `Const` so that they live in the `PyTreeDef` instead of
    being treated as leaves.
    """

    value: A = Pytree.static()


def const(a: A) -> Const[A]:
    """Wrap a Python value as a static `Const`."""
    return Const(a)


#############
# Addresses #
#############


class Address(tuple):
    """A structured address: an ordered tuple of `str` and `int` segments.

    Equality and hashing are those of the underlying tuple, so
    `Address(("cp", 2)) == ("cp", 2)`. Ordering is total: segments compare
    by kind first (integers before strings), then by value.

    >>> Address(("cp", 2)) < Address(("cp", 10))
    True
    >>> str(Address(("h", 0)))
    'h/0'
    """

    def __new__(cls, segments=()):
        return super().__new__(cls, tuple(_segment(s) for s in segments))

    def sort_key(self):
        return tuple((0, s, "") if isinstance(s, int) else (1, 0, s) for s in self)

    def __lt__(self, other):
        return self.sort_key() < as_address(other).sort_key()

    def __le__(self, other):
        return self.sort_key() <= as_address(other).sort_key()

    def __gt__(self, other):
        return self.sort_key() > as_address(other).sort_key()

    def __ge__(self, other):
        return self.sort_key() >= as_address(other).sort_key()

    def __str__(self):
        return "/".join(str(s) for s in self)

    def __repr__(self):
        return f"Address({tuple(self)!r})"


def _segment(s) -> str | int:
    if isinstance(s, str):
        return s
    try:
        return operator.index(s)
    except TypeError:
        raise AddressError(
            f"Address segments must be strings or integers, got {type(s).__name__}"
        ) from None


def as_address(addr) -> Address:
    """Normalize a string, tuple or `Address` into an `Address`."""
    if isinstance(addr, Address):
        return addr
    if isinstance(addr, tuple):
        return Address(addr)
    return Address((addr,))


def addr(*segments) -> Address:
    """Build an address from its segments: `addr("cp", 3)`."""
    return Address(segments)


##############
# Choice map #
##############


@jtu.register_pytree_node_class
class ChoiceMap(Mapping):
    """An immutable map from `Address` to choice value.

    Keys are normalized on the way in, so `"k"`, `("k",)` and
    `Address(("k",))` all name the same choice. Updates return new maps.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping | Iterable | None = None):
        if entries is None:
            entries = {}
        if isinstance(entries, Mapping):
            entries = entries.items()
        self._entries = {as_address(a): v for a, v in entries}

    def __getitem__(self, address):
        try:
            return self._entries[as_address(address)]
        except KeyError:
            raise AddressError(f"No choice at address {address!r}") from None

    def __contains__(self, address):
        return as_address(address) in self._entries

    def __iter__(self):
        return iter(self.addresses())

    def __len__(self):
        return len(self._entries)

    def __eq__(self, other):
        if not isinstance(other, ChoiceMap):
            return NotImplemented
        return self._entries.keys() == other._entries.keys() and all(
            bool(jnp.all(jnp.asarray(self._entries[a]) == jnp.asarray(other._entries[a])))
            for a in self._entries
        )

    __hash__ = None

    def __repr__(self):
        inner = ", ".join(f"{str(a)!r}: {self._entries[a]!r}" for a in self.addresses())
        return f"ChoiceMap({{{inner}}})"

    def addresses(self) -> list[Address]:
        return sorted(self._entries)

    def set(self, address, value) -> "ChoiceMap":
        entries = dict(self._entries)
        entries[as_address(address)] = value
        return ChoiceMap(entries)

    def merge(self, other: Mapping) -> "ChoiceMap":
        """Right-biased merge: values from `other` win."""
        entries = dict(self._entries)
        entries.update(ChoiceMap(other)._entries)
        return ChoiceMap(entries)

    __or__ = merge

    def filter(self, selection: "Selection") -> tuple["ChoiceMap", "ChoiceMap"]:
        """Split into (selected, unselected) parts."""
        selected = {a: v for a, v in self._entries.items() if a in selection}
        unselected = {a: v for a, v in self._entries.items() if a not in selection}
        return ChoiceMap(selected), ChoiceMap(unselected)

    def tree_flatten(self):
        addresses = tuple(self.addresses())
        return [self._entries[a] for a in addresses], addresses

    @classmethod
    def tree_unflatten(cls, addresses, values):
        return cls(zip(addresses, values))


def choice_map(entries: Mapping | None = None, **kwargs) -> ChoiceMap:
    """Build a `ChoiceMap` from a mapping and/or keyword addresses."""
    cm = ChoiceMap(entries)
    return cm.merge(kwargs) if kwargs else cm


##############
# Selections #
##############


@Pytree.dataclass
class Selection(Pytree):
    """A set of addresses used to pick the choices a kernel resamples.

    Example:
        ```python
        sel("k")                 # just "k"
        sel("k", ("cp", 0))      # two addresses
        sel(())                  # everything
        sel()                    # nothing
        ```
    """

    addresses: frozenset = Pytree.static(default=frozenset())
    everything: bool = Pytree.static(default=False)

    def __contains__(self, address) -> bool:
        return self.everything or as_address(address) in self.addresses

    def __or__(self, other: "Selection") -> "Selection":
        return Selection(
            self.addresses | other.addresses,
            self.everything or other.everything,
        )


def sel(*v) -> Selection:
    """Create a `Selection`. `sel(())` selects all addresses."""
    if len(v) == 1 and v[0] == ():
        return Selection(everything=True)
    return Selection(frozenset(as_address(a) for a in v if a is not None))


###################
# Argument hints  #
###################


@Pytree.dataclass
class NoChange(Pytree):
    """Hint that an argument is unchanged across an update."""


@Pytree.dataclass
class UnknownChange(Pytree):
    """Hint that an argument may have changed across an update."""


no_change = NoChange()
unknown_change = UnknownChange()


#########
# Trace #
#########


class Trace(Pytree):
    """An immutable record of the random choices made by one execution.

    This is the only view the inference engine has of a model: read a
    choice by address, read the log-probability, and produce an updated
    trace together with the incremental log-weight.
    """

    @abstractmethod
    def get_gen_fn(self) -> "Fn":
        pass

    @abstractmethod
    def get_choices(self) -> ChoiceMap:
        pass

    @abstractmethod
    def get_args(self) -> tuple:
        pass

    @abstractmethod
    def get_retval(self) -> Any:
        pass

    @abstractmethod
    def get_score(self) -> Score:
        pass

    def update(
        self,
        constraints: Mapping | None = None,
        args: tuple | None = None,
        argdiffs: tuple | None = None,
        key: PRNGKey | None = None,
    ) -> "tuple[Trace, Weight, ChoiceMap]":
        return self.get_gen_fn().update(
            self, constraints, args=args, argdiffs=argdiffs, key=key
        )

    def __getitem__(self, address):
        return self.get_choices()[address]


@Pytree.dataclass
class Tr(Trace):
    """Concrete implementation of the Trace interface.

    Args:
        _gen_fn: The generative function that produced this trace.
        _args: Arguments passed to the generative function.
        _choices: Random choices made during execution.
        _densities: Log density of each choice under the arguments it was drawn with.
        _retval: Return value of the execution.
        _score: Log probability of all the choices.
    """

    _gen_fn: "Fn"
    _args: tuple
    _choices: ChoiceMap
    _densities: ChoiceMap
    _retval: Any
    _score: Score

    def get_gen_fn(self) -> "Fn":
        return self._gen_fn

    def get_choices(self) -> ChoiceMap:
        return self._choices

    def get_args(self) -> tuple:
        return self._args

    def get_retval(self) -> Any:
        return self._retval

    def get_score(self) -> Score:
        return self._score

    def get_density(self, address) -> Density:
        """Log density of the single choice at `address`."""
        return self._densities[address]


def get_choices(x: Trace | ChoiceMap) -> ChoiceMap:
    return x.get_choices() if isinstance(x, Trace) else x


def get_score(x: Trace) -> Weight:
    return x.get_score()


def get_retval(x: Trace) -> Any:
    return x.get_retval()


############
# Handlers #
############


def _zero():
    return jnp.asarray(0.0)


def _check_address_collision(address: Address, visited: set, gen_fn: "Fn"):
    if address in visited:
        name = getattr(gen_fn.source.value, "__name__", "<anonymous>")
        raise AddressError(
            f"Address collision detected: '{address}' is used multiple times "
            f"in generative function '{name}'."
        )


def _next_key(handler) -> PRNGKey:
    if handler.key is None:
        raise AddressError(
            "A fresh random choice is needed but no key was provided: "
            "deterministic updates must constrain every new address."
        )
    handler.key, sub_key = jrand.split(handler.key)
    return sub_key


@dataclass
class Simulate:
    """Handler for simulating generative function executions."""

    key: PRNGKey
    parent_fn: "Fn"
    choices: dict = field(default_factory=dict)
    densities: dict = field(default_factory=dict)
    score: Score = field(default_factory=_zero)

    def __call__(self, address: Address, dist, args) -> Any:
        _check_address_collision(address, self.choices.keys(), self.parent_fn)
        x = dist.sample(_next_key(self), *args)
        logp = dist.logpdf(x, *args)
        self.choices[address] = x
        self.densities[address] = logp
        self.score = self.score + logp
        return x


@dataclass
class Generate:
    key: PRNGKey
    constraints: ChoiceMap
    parent_fn: "Fn"
    choices: dict = field(default_factory=dict)
    densities: dict = field(default_factory=dict)
    score: Score = field(default_factory=_zero)
    weight: Weight = field(default_factory=_zero)

    def __call__(self, address: Address, dist, args) -> Any:
        _check_address_collision(address, self.choices.keys(), self.parent_fn)
        if address in self.constraints:
            x = self.constraints[address]
            logp = dist.logpdf(x, *args)
            self.weight = self.weight + logp
        else:
            x = dist.sample(_next_key(self), *args)
            logp = dist.logpdf(x, *args)
        self.choices[address] = x
        self.densities[address] = logp
        self.score = self.score + logp
        return x


@dataclass
class Assess:
    choices: ChoiceMap
    parent_fn: "Fn"
    visited: set = field(default_factory=set)
    logp: Density = field(default_factory=_zero)

    def __call__(self, address: Address, dist, args) -> Any:
        _check_address_collision(address, self.visited, self.parent_fn)
        self.visited.add(address)
        x = self.choices[address]
        self.logp = self.logp + dist.logpdf(x, *args)
        return x


@dataclass
class Update:
    trace: Tr
    constraints: ChoiceMap
    key: PRNGKey | None
    parent_fn: "Fn"
    choices: dict = field(default_factory=dict)
    densities: dict = field(default_factory=dict)
    score: Score = field(default_factory=_zero)
    fresh: Density = field(default_factory=_zero)

    def __call__(self, address: Address, dist, args) -> Any:
        _check_address_collision(address, self.choices.keys(), self.parent_fn)
        old = self.trace.get_choices()
        if address in self.constraints:
            x = self.constraints[address]
            logp = dist.logpdf(x, *args)
        elif address in old:
            x = old[address]
            logp = dist.logpdf(x, *args)
        else:
            x = dist.sample(_next_key(self), *args)
            logp = dist.logpdf(x, *args)
            self.fresh = self.fresh + logp
        self.choices[address] = x
        self.densities[address] = logp
        self.score = self.score + logp
        return x


@dataclass
class Regenerate:
    trace: Tr
    selection: Selection
    key: PRNGKey
    parent_fn: "Fn"
    choices: dict = field(default_factory=dict)
    densities: dict = field(default_factory=dict)
    score: Score = field(default_factory=_zero)
    fresh: Density = field(default_factory=_zero)

    def __call__(self, address: Address, dist, args) -> Any:
        _check_address_collision(address, self.choices.keys(), self.parent_fn)
        old = self.trace.get_choices()
        if address in old and address not in self.selection:
            x = old[address]
            logp = dist.logpdf(x, *args)
        else:
            x = dist.sample(_next_key(self), *args)
            logp = dist.logpdf(x, *args)
            self.fresh = self.fresh + logp
        self.choices[address] = x
        self.densities[address] = logp
        self.score = self.score + logp
        return x


class _HandlerStack(threading.local):
    def __init__(self):
        self.handlers = []


# One stack per thread, so independent chains can run side by side.
_handler_stack = _HandlerStack()


def trace(address, dist, args) -> Any:
    """Record a random choice from `dist` at `address` in the running execution."""
    if not _handler_stack.handlers:
        raise RuntimeError(
            f"Random choice at {address!r} was made outside of a generative function."
        )
    handler = _handler_stack.handlers[-1]
    return handler(as_address(address), dist, args)


@Pytree.dataclass
class Thunk(Pytree):
    """A distribution applied to arguments, waiting for an address.

    `normal(0.0, 1.0) @ "x"` builds a `Thunk` and then traces it at `"x"`.
    """

    dist: Any
    args: tuple

    def __matmul__(self, address):
        return trace(address, self.dist, self.args)


######
# Fn #
######


@Pytree.dataclass
class Fn(Generic[R], Pytree):
    """A generative function created from a Python function with `@gen`.

    The function body makes addressed random choices with the `@` operator.
    Each interface method runs the body under a handler that decides, per
    address, whether to sample, read a constraint, or reuse an old value.

    Example:
        >>> import jax.random as jrand
        >>> from rjax import gen, normal
        >>>
        >>> @gen
        ... def model(mu):
        ...     x = normal(mu, 1.0) @ "x"
        ...     return normal(x, 0.1) @ "y"
        >>>
        >>> tr = model.simulate(jrand.PRNGKey(0), (0.0,))
        >>> sorted(str(a) for a in tr.get_choices())
        ['x', 'y']
    """

    source: Const[Callable[..., R]]

    def _run(self, handler, args: tuple):
        handlers = _handler_stack.handlers
        depth = len(handlers)
        handlers.append(handler)
        try:
            return self.source.value(*args)
        finally:
            balanced = len(handlers) == depth + 1 and handlers[-1] is handler
            del handlers[depth:]
            if not balanced:
                raise RuntimeError(
                    "Handler stack was left unbalanced by the generative function body."
                )

    def simulate(self, key: PRNGKey, args: tuple = ()) -> Tr:
        handler = Simulate(key, self)
        r = self._run(handler, args)
        return Tr(
            self,
            tuple(args),
            ChoiceMap(handler.choices),
            ChoiceMap(handler.densities),
            r,
            handler.score,
        )

    def generate(
        self,
        key: PRNGKey,
        constraints: Mapping | None,
        args: tuple = (),
    ) -> tuple[Tr, Weight]:
        """Run with `constraints` fixed; the weight is their total log density."""
        constraints = ChoiceMap(constraints)
        handler = Generate(key, constraints, self)
        r = self._run(handler, args)
        _check_all_visited(constraints, handler.choices.keys())
        tr = Tr(
            self,
            tuple(args),
            ChoiceMap(handler.choices),
            ChoiceMap(handler.densities),
            r,
            handler.score,
        )
        return tr, handler.weight

    def assess(self, choices: Mapping, args: tuple = ()) -> tuple[Density, R]:
        """Log density of a complete set of choices.

        Every address the function visits must be present in `choices`,
        and every address in `choices` must be visited.
        """
        choices = ChoiceMap(choices)
        handler = Assess(choices, self)
        r = self._run(handler, args)
        _check_all_visited(choices, handler.visited)
        return handler.logp, r

    def update(
        self,
        tr: Tr,
        constraints: Mapping | None = None,
        args: tuple | None = None,
        argdiffs: tuple | None = None,
        key: PRNGKey | None = None,
    ) -> tuple[Tr, Weight, ChoiceMap]:
        """Move `tr` to new constraints and/or arguments.

        Returns the new trace, the log-weight
        `new_score - old_score - (log density of freshly sampled choices)`,
        and the discarded old values. Fresh choices need `key`.
        """
        constraints = ChoiceMap(constraints)
        if args is None:
            args = tr.get_args()
            argdiffs = (no_change,) * len(args) if argdiffs is None else argdiffs
        argdiffs = (unknown_change,) * len(args) if argdiffs is None else argdiffs
        if not constraints and all(isinstance(d, NoChange) for d in argdiffs):
            return tr, _zero(), ChoiceMap()

        handler = Update(tr, constraints, key, self)
        r = self._run(handler, tuple(args))
        _check_all_visited(constraints, handler.choices.keys())
        old = tr.get_choices()
        discard = {
            a: v
            for a, v in old.items()
            if a not in handler.choices or a in constraints
        }
        new_tr = Tr(
            self,
            tuple(args),
            ChoiceMap(handler.choices),
            ChoiceMap(handler.densities),
            r,
            handler.score,
        )
        weight = handler.score - tr.get_score() - handler.fresh
        return new_tr, weight, ChoiceMap(discard)

    def regenerate(
        self,
        key: PRNGKey,
        tr: Tr,
        selection: Selection,
        args: tuple | None = None,
    ) -> tuple[Tr, Weight, ChoiceMap]:
        """Resample the selected choices (and any new ones) from the prior.

        The weight is the MH log acceptance ratio for this move.
        """
        args = tr.get_args() if args is None else args
        handler = Regenerate(tr, selection, key, self)
        r = self._run(handler, tuple(args))
        old = tr.get_choices()
        replaced = [
            a for a in old if a in selection or a not in handler.choices
        ]
        old_replaced = sum((tr.get_density(a) for a in replaced), _zero())
        new_tr = Tr(
            self,
            tuple(args),
            ChoiceMap(handler.choices),
            ChoiceMap(handler.densities),
            r,
            handler.score,
        )
        weight = (handler.score - handler.fresh) - (tr.get_score() - old_replaced)
        discard = ChoiceMap({a: old[a] for a in replaced})
        return new_tr, weight, discard


def _check_all_visited(choices: ChoiceMap, visited) -> None:
    unvisited = [str(a) for a in choices.addresses() if a not in visited]
    if unvisited:
        raise AddressError(
            f"Choices at {unvisited} were provided but never visited by the model."
        )


def gen(fn: Callable[..., R]) -> Fn[R]:
    """Convert a function into a generative function.

    The decorated function can use the `@` operator to make addressed
    random choices from distributions.

    Example:
        >>> from rjax import gen, normal
        >>>
        >>> @gen
        ... def model(mu, sigma):
        ...     x = normal(mu, sigma) @ "x"
        ...     y = normal(x, 0.1) @ "y"
        ...     return x + y
    """
    return Fn(source=const(fn))
