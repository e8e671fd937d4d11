"""Provider registry - static mapping of route tier to backend endpoint.

Each tier (PRO/MID/LOW) is served by one OpenAI-compatible backend:
- PRO: high-capability model for architecture, maths, multi-step planning
- MID: balanced default; also the safe fallback target
- LOW: cheap model; doubles as the auxiliary complexity evaluator

The registry is built once from Settings and is read-only afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from helix_router.config import Settings

log = structlog.get_logger(__name__)


class RouteTier(StrEnum):
    """Backend capability tiers for routing decisions."""

    PRO = "pro"  # Premium model for complex reasoning
    MID = "mid"  # Balanced default and fallback target
    LOW = "low"  # Fast, cheap model for simple tasks


@dataclass(frozen=True)
class ProviderConfig:
    """Backend endpoint serving a single tier.

    Attributes:
        base_url: OpenAI-compatible API root (e.g. "http://host:8310/v1")
        api_key: Bearer token sent to the backend (may be empty)
        model_id: Backend model identifier written into forwarded requests
    """

    base_url: str
    api_key: str
    model_id: str

    def __post_init__(self) -> None:
        """Validate provider config after initialization."""
        if not self.base_url:
            raise ValueError("base_url cannot be empty")
        if not self.model_id:
            raise ValueError("model_id cannot be empty")

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"

    def auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # An empty key would serialise as "Bearer ", which HTTP/1.1 rejects
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers


class ProviderRegistry:
    """Read-only tier → provider catalog."""

    def __init__(self, providers: dict[RouteTier, ProviderConfig]) -> None:
        missing = [tier.value for tier in RouteTier if tier not in providers]
        if missing:
            raise ValueError(f"Provider registry missing tiers: {', '.join(missing)}")

        self._providers = dict(providers)
        log.info(
            "provider_registry.initialized",
            models={tier.value: cfg.model_id for tier, cfg in self._providers.items()},
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderRegistry:
        return cls(
            {
                RouteTier.PRO: ProviderConfig(
                    base_url=settings.pro_url,
                    api_key=settings.pro_key.get_secret_value(),
                    model_id=settings.pro_model,
                ),
                RouteTier.MID: ProviderConfig(
                    base_url=settings.mid_url,
                    api_key=settings.mid_key.get_secret_value(),
                    model_id=settings.mid_model,
                ),
                RouteTier.LOW: ProviderConfig(
                    base_url=settings.low_url,
                    api_key=settings.low_key.get_secret_value(),
                    model_id=settings.low_model,
                ),
            }
        )

    def get(self, tier: RouteTier) -> ProviderConfig:
        return self._providers[tier]

    def model_id(self, tier: RouteTier) -> str:
        return self._providers[tier].model_id

    def summary(self) -> list[str]:
        return [f"{tier.value.upper()}: {self._providers[tier].model_id}" for tier in RouteTier]


def resolve_explicit_tier(model: str | None, namespace: str) -> RouteTier | None:
    """Return the tier a client explicitly asked for, if any.

    Accepts bare tier names ("pro") and namespaced ones ("helix-router/pro").
    "<namespace>/auto" and any other model name mean automatic routing.
    """
    if not model:
        return None

    name = model.strip().lower()
    prefix = f"{namespace.lower()}/"
    if name.startswith(prefix):
        name = name[len(prefix):]

    try:
        return RouteTier(name)
    except ValueError:
        return None
