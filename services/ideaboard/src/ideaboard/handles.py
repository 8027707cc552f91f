from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from common.utils import strip_to_alnum

SUFFIX_LENGTH = 4
FALLBACK_PREFIX = "user"
FALLBACK_SUFFIX_LENGTH = 8
MAX_BASE_LENGTH = 60
MIN_STABLE_ID_LENGTH = 4


class InvalidSeedError(ValueError):
    pass


@dataclass(frozen=True)
class IdentitySeed:
    email: str
    stable_id: str
    first_name: str | None = None
    last_name: str | None = None

    def __post_init__(self) -> None:
        if not self.email or not self.email.strip():
            raise InvalidSeedError("email must be a non-empty string.")
        if not self.stable_id or len(self.stable_id) < MIN_STABLE_ID_LENGTH:
            raise InvalidSeedError(
                f"stable_id must be at least {MIN_STABLE_ID_LENGTH} characters."
            )


def _full_name_base(seed: IdentitySeed) -> str | None:
    if not (seed.first_name and seed.last_name):
        return None
    base = strip_to_alnum(f"{seed.first_name}{seed.last_name}")
    return base if len(base) >= 3 else None


def _first_name_base(seed: IdentitySeed) -> str | None:
    if not seed.first_name:
        return None
    base = strip_to_alnum(seed.first_name)
    return base if len(base) >= 2 else None


def _email_local_part_base(seed: IdentitySeed) -> str | None:
    base = strip_to_alnum(seed.email.split("@", 1)[0])
    return base if len(base) >= 2 else None


HandleStrategy = Callable[[IdentitySeed], str | None]

STRATEGIES: tuple[tuple[str, HandleStrategy], ...] = (
    ("full_name", _full_name_base),
    ("first_name", _first_name_base),
    ("email_local_part", _email_local_part_base),
)


def _stable_suffix(stable_id: str, length: int) -> str:
    return strip_to_alnum(stable_id)[-length:]


def _winning_strategy(seed: IdentitySeed) -> tuple[str, str | None]:
    for name, strategy in STRATEGIES:
        base = strategy(seed)
        if base is not None:
            return name, base
    return "fallback", None


def describe_strategy(seed: IdentitySeed) -> str:
    return _winning_strategy(seed)[0]


def derive_handle(seed: IdentitySeed) -> str:
    """Derive a lowercase alphanumeric handle for a profile.

    The first strategy in ``STRATEGIES`` that yields a usable base wins and is
    suffixed with the last four characters of ``stable_id``. When none does,
    the handle is ``user`` plus the last eight characters of ``stable_id``.
    The suffix only makes collisions unlikely; persisting the handle and
    resolving a duplicate is up to the profile store.
    """
    _, base = _winning_strategy(seed)
    if base is None:
        return FALLBACK_PREFIX + _stable_suffix(seed.stable_id, FALLBACK_SUFFIX_LENGTH)
    return base[:MAX_BASE_LENGTH] + _stable_suffix(seed.stable_id, SUFFIX_LENGTH)
