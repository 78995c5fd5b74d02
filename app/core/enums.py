import enum
from typing import TypeVar

E = TypeVar("E", bound=enum.Enum)


def parse_enum(enum_cls: type[E], raw: "str | E | None", error: type[Exception]) -> E | None:
    """Normalise a free-text value (case/whitespace-insensitive) into ``enum_cls``.

    ``None`` passes through; anything that is not a member raises ``error``.
    """
    if raw is None or isinstance(raw, enum_cls):
        return raw
    key = str(raw).strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return enum_cls[key]
    except KeyError:
        allowed = ", ".join(m.name for m in enum_cls)
        raise error(f"Invalid {enum_cls.__name__}: {raw!r} (expected one of {allowed})") from None
