"""Per-view sampling profiles.

Each view kind (order list, option chain, spot tracker) samples the
tick store at its own cadence and subscribes in its own packet mode.
Profiles ship with defaults and can be overridden from YAML.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml

from positiondesk.schemas.enums import BrokerageMode, SubscriptionMode

ORDER_LIST = "order_list"
OPTION_CHAIN = "option_chain"
SPOT = "spot"


@dataclass(frozen=True)
class ViewProfile:
    """Sampling cadence and subscription mode for one view kind."""
    name: str
    throttle_ms: int
    subscription_mode: SubscriptionMode = SubscriptionMode.QUOTE
    brokerage_mode: BrokerageMode = BrokerageMode.ENTRY_ONLY

    def __post_init__(self) -> None:
        if self.throttle_ms < 0:
            raise ValueError(f"throttle_ms must be >= 0, got {self.throttle_ms}")

    @property
    def throttle_interval(self) -> float:
        """Throttle in seconds."""
        return self.throttle_ms / 1000.0


DEFAULT_PROFILES: dict[str, ViewProfile] = {
    ORDER_LIST: ViewProfile(ORDER_LIST, 200, SubscriptionMode.QUOTE),
    OPTION_CHAIN: ViewProfile(OPTION_CHAIN, 50, SubscriptionMode.LTP),
    SPOT: ViewProfile(SPOT, 50, SubscriptionMode.LTP),
}


@dataclass(frozen=True)
class ViewProfiles:
    """Immutable set of view profiles keyed by name."""
    profiles: dict[str, ViewProfile]

    def get(self, name: str) -> ViewProfile:
        try:
            return self.profiles[name]
        except KeyError:
            raise KeyError(f"No view profile named {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self.profiles

    @classmethod
    def defaults(
        cls,
        *,
        order_list_throttle_ms: int | None = None,
        option_chain_throttle_ms: int | None = None,
    ) -> ViewProfiles:
        """Built-in profiles, optionally with throttle overrides from settings."""
        profiles = dict(DEFAULT_PROFILES)
        if order_list_throttle_ms is not None:
            profiles[ORDER_LIST] = replace(profiles[ORDER_LIST], throttle_ms=order_list_throttle_ms)
        if option_chain_throttle_ms is not None:
            profiles[OPTION_CHAIN] = replace(
                profiles[OPTION_CHAIN], throttle_ms=option_chain_throttle_ms
            )
            profiles[SPOT] = replace(profiles[SPOT], throttle_ms=option_chain_throttle_ms)
        return cls(profiles=profiles)

    @classmethod
    def from_yaml(cls, path: Path, base: ViewProfiles | None = None) -> ViewProfiles:
        """Load from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, base)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], base: ViewProfiles | None = None
    ) -> ViewProfiles:
        """Load from dict (e.g. parsed YAML). Unlisted views keep ``base``,
        the built-in defaults when not given.

        Expected shape::

            views:
              order_list:
                throttle_ms: 250
                subscription_mode: quote
                brokerage_mode: round-trip
        """
        profiles = dict(base.profiles if base is not None else DEFAULT_PROFILES)
        for name, view_data in (data.get("views") or {}).items():
            current = profiles.get(name)
            view_data = view_data or {}
            throttle_ms = view_data.get("throttle_ms", current.throttle_ms if current else None)
            if throttle_ms is None:
                raise ValueError(f"View profile {name!r} needs throttle_ms")
            mode = view_data.get(
                "subscription_mode",
                current.subscription_mode.value if current else SubscriptionMode.QUOTE.value,
            )
            brokerage = view_data.get(
                "brokerage_mode",
                current.brokerage_mode.value if current else BrokerageMode.ENTRY_ONLY.value,
            )
            profiles[name] = ViewProfile(
                name=name,
                throttle_ms=int(throttle_ms),
                subscription_mode=SubscriptionMode(mode),
                brokerage_mode=BrokerageMode(brokerage),
            )
        return cls(profiles=profiles)
