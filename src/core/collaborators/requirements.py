"""
Stage requirements

A stage lists the fields an opportunity must carry before it may enter.
Each entry is either a single field name or a set of alternatives of which
any one is enough. The directory stores alternatives as "email||phone";
that text form is parsed here once and never seen by the engine.
"""

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Tuple, Union

ANY_OF_SEPARATOR = "||"


@dataclass(frozen=True)
class SingleField:
    name: str

    @property
    def names(self) -> Tuple[str, ...]:
        return (self.name,)

    @property
    def label(self) -> str:
        return self.name

    code = "required"

    def describe(self) -> str:
        return f"'{self.name}' is required"


@dataclass(frozen=True)
class AnyOfFields:
    names: Tuple[str, ...]

    @property
    def label(self) -> str:
        return ANY_OF_SEPARATOR.join(self.names)

    code = "required_any_of"

    def describe(self) -> str:
        return "One of " + ", ".join(f"'{n}'" for n in self.names) + " is required"


RequiredField = Union[SingleField, AnyOfFields]


def parse_required_field(raw: Union[str, Iterable[str]]) -> RequiredField:
    """Parse "name" or "a||b" (or a list of alternatives) into a requirement."""
    if isinstance(raw, str):
        names = [part.strip() for part in raw.split(ANY_OF_SEPARATOR)]
    else:
        names = [str(part).strip() for part in raw]
    names = [n for n in names if n]
    if not names:
        raise ValueError(f"Empty required field entry: {raw!r}")
    if len(names) == 1:
        return SingleField(names[0])
    return AnyOfFields(tuple(names))


def parse_required_fields(raw: Iterable[Any]) -> List[RequiredField]:
    return [parse_required_field(entry) for entry in raw or []]


def is_empty(value: Any) -> bool:
    """None, blank strings and empty collections count as missing; zero does not."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


def unmet_requirements(
    requirements: Iterable[RequiredField],
    resolve: Callable[[str], Any],
) -> List[RequiredField]:
    """
    Evaluate requirements against a resolver.

    Args:
        requirements: Requirements declared by the target stage
        resolve: Maps a field name to its current value (None when absent)

    Returns:
        Every requirement that is not satisfied, in declaration order
    """
    missing = []
    for requirement in requirements:
        if not any(not is_empty(resolve(name)) for name in requirement.names):
            missing.append(requirement)
    return missing
