"""Webhook ingestion configuration: read once from the environment.

Per-provider secrets, plan mapping tables, free-tier id, store and
dedup connection settings.  The settings object is frozen and its
mapping tables are read-only after load, so request handlers share it
without locking.

Secret policy:
- An empty provider secret means signature verification is SKIPPED for
  that provider (environments without secrets configured).  This is a
  deliberate operational bypass and is logged at WARNING on every
  request that relies on it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from subsync.models import Provider

logger = logging.getLogger(__name__)

# Provider -> (signature header (lowercase), secret env var)
PROVIDER_CONFIG: dict[Provider, tuple[str, str]] = {
    Provider.LEMONSQUEEZY: ("x-signature", "LEMONSQUEEZY_WEBHOOK_SECRET"),
    Provider.RAZORPAY: ("x-razorpay-signature", "RAZORPAY_WEBHOOK_SECRET"),
}

_DEFAULT_FREE_PLAN = "free"
_DEFAULT_KNOWN_PLANS = "free,maker,pro,agency"
_DEFAULT_VARIANT_PLANS = "Maker=maker,Pro=pro,Agency=agency"
_DEFAULT_STORE_TIMEOUT_SECONDS = 10.0
_DEFAULT_DEDUP_TTL_SECONDS = 86400  # 24 hours


def parse_plan_map(raw: str) -> dict[str, str]:
    """Parse ``Name=plan,Other=plan2`` into a dict.

    Blank entries are ignored; entries without ``=`` are logged and skipped.
    """
    result: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, plan = item.partition("=")
        if not sep or not name.strip() or not plan.strip():
            logger.warning("Ignoring malformed plan map entry: %r", item)
            continue
        result[name.strip()] = plan.strip()
    return result


def _parse_list(raw: str) -> frozenset[str]:
    return frozenset(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class WebhookSettings:
    """Immutable configuration for the ingestion pipeline."""

    secrets: Mapping[Provider, str] = field(default_factory=dict)
    plan_maps: Mapping[Provider, Mapping[str, str]] = field(default_factory=dict)
    free_plan: str = _DEFAULT_FREE_PLAN
    known_plans: frozenset[str] = field(
        default_factory=lambda: _parse_list(_DEFAULT_KNOWN_PLANS)
    )
    database_url: str = ""
    profiles_table: str = "profiles"
    store_timeout_seconds: float = _DEFAULT_STORE_TIMEOUT_SECONDS
    dedup_redis_url: str = ""
    dedup_ttl_seconds: int = _DEFAULT_DEDUP_TTL_SECONDS

    def __post_init__(self) -> None:
        # Freeze the nested tables so they can be shared across requests
        object.__setattr__(self, "secrets", MappingProxyType(dict(self.secrets)))
        object.__setattr__(
            self,
            "plan_maps",
            MappingProxyType(
                {p: MappingProxyType(dict(m)) for p, m in self.plan_maps.items()}
            ),
        )
        object.__setattr__(self, "known_plans", frozenset(self.known_plans) | {self.free_plan})

    def secret_for(self, provider: Provider) -> str:
        return self.secrets.get(provider, "")

    def plan_map_for(self, provider: Provider) -> Mapping[str, str]:
        return self.plan_maps.get(provider, MappingProxyType({}))

    def signature_header_for(self, provider: Provider) -> str:
        return PROVIDER_CONFIG[provider][0]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WebhookSettings:
        """Build settings from environment variables (``os.environ`` by default)."""
        env = os.environ if environ is None else environ

        secrets = {
            provider: env.get(var, "").strip()
            for provider, (_header, var) in PROVIDER_CONFIG.items()
        }
        for provider, secret in secrets.items():
            if not secret:
                logger.warning(
                    "%s not set; %s webhook signatures will NOT be verified",
                    PROVIDER_CONFIG[provider][1],
                    provider.value,
                )

        plan_maps = {
            Provider.LEMONSQUEEZY: parse_plan_map(
                env.get("LEMONSQUEEZY_VARIANT_PLANS", _DEFAULT_VARIANT_PLANS)
            ),
            Provider.RAZORPAY: parse_plan_map(env.get("RAZORPAY_PLAN_MAP", "")),
        }

        return cls(
            secrets=secrets,
            plan_maps=plan_maps,
            free_plan=env.get("SUBSYNC_FREE_PLAN", _DEFAULT_FREE_PLAN).strip() or _DEFAULT_FREE_PLAN,
            known_plans=_parse_list(env.get("SUBSYNC_KNOWN_PLANS", _DEFAULT_KNOWN_PLANS)),
            database_url=env.get("DATABASE_URL", ""),
            profiles_table=env.get("SUBSYNC_PROFILES_TABLE", "profiles"),
            store_timeout_seconds=float(
                env.get("SUBSYNC_STORE_TIMEOUT_SECONDS", _DEFAULT_STORE_TIMEOUT_SECONDS)
            ),
            dedup_redis_url=env.get("WEBHOOK_DEDUP_REDIS_URL", ""),
            dedup_ttl_seconds=int(
                env.get("WEBHOOK_DEDUP_TTL_SECONDS", _DEFAULT_DEDUP_TTL_SECONDS)
            ),
        )
