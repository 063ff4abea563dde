"""
Map a subscriber's plan tier to the block range to index.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from onchain_indexer.config import (
    MOST_RESTRICTIVE_TIER,
    ChainId,
    SubscriptionTier,
    TierConfig,
    get_chain_config,
    get_tier_config,
    settings,
)
from onchain_indexer.utils.exceptions import TierLookupFailure

logger = structlog.get_logger()


@dataclass(frozen=True)
class SubscriptionInfo:
    tier: SubscriptionTier
    is_active: bool
    historical_days: Optional[int] = None
    continuous_sync: Optional[bool] = None
    api_calls_per_month: Optional[int] = None


@dataclass(frozen=True)
class BlockRange:
    start_block: int
    end_block: int
    tier: SubscriptionTier
    historical_days: int
    continuous_sync: bool
    max_blocks: int
    tier_degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_block": self.start_block,
            "end_block": self.end_block,
            "tier": self.tier.name,
            "historical_days": self.historical_days,
            "continuous_sync": self.continuous_sync,
            "max_blocks": self.max_blocks,
            "tier_degraded": self.tier_degraded,
        }


class SubscriptionLookup(ABC):
    """Read-only tier lookup. May fail; its answers are untrusted."""

    @abstractmethod
    def get_subscription_info(self, subscriber_id: str) -> SubscriptionInfo:
        """
        Raises:
            TierLookupFailure: If the subscription cannot be resolved
        """


class StaticSubscriptionLookup(SubscriptionLookup):
    """Tiers from a fixed mapping, for local runs and tests"""

    def __init__(self, tiers: Optional[Dict[str, SubscriptionTier]] = None, default: Optional[SubscriptionTier] = None):
        self.tiers = dict(tiers or {})
        self.default = default

    def set_tier(self, subscriber_id: str, tier: SubscriptionTier) -> None:
        self.tiers[subscriber_id] = tier

    def get_subscription_info(self, subscriber_id: str) -> SubscriptionInfo:
        tier = self.tiers.get(subscriber_id, self.default)
        if tier is None:
            raise TierLookupFailure(f"No subscription linked to {subscriber_id}")
        return SubscriptionInfo(tier=tier, is_active=True)


class HttpSubscriptionLookup(SubscriptionLookup):
    """Query the subscription service at ``GET {base_url}/subscriptions/{subscriber_id}``"""

    def __init__(self, base_url: str = None, client: httpx.Client = None, timeout: float = 10.0):
        self.base_url = (base_url or settings.SUBSCRIPTION_SERVICE_URL or "").rstrip("/")
        if not self.base_url:
            raise ValueError("Subscription service URL is required")
        self.client = client or httpx.Client(timeout=timeout)

    def get_subscription_info(self, subscriber_id: str) -> SubscriptionInfo:
        try:
            response = self.client.get(f"{self.base_url}/subscriptions/{subscriber_id}")
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TierLookupFailure(f"Subscription lookup failed for {subscriber_id}: {e}") from e

        if not isinstance(body, dict) or "tier" not in body:
            raise TierLookupFailure(f"Malformed subscription response for {subscriber_id}")

        raw_tier = body["tier"]
        try:
            if isinstance(raw_tier, str) and not raw_tier.isdigit():
                tier = SubscriptionTier[raw_tier.strip().upper()]
            else:
                tier = SubscriptionTier(int(raw_tier))
        except (KeyError, ValueError) as e:
            raise TierLookupFailure(f"Unknown tier {raw_tier!r} for {subscriber_id}") from e

        return SubscriptionInfo(
            tier=tier,
            is_active=bool(body.get("isActive", body.get("is_active", False))),
            historical_days=body.get("historicalDays"),
            continuous_sync=body.get("continuousSync"),
            api_calls_per_month=body.get("apiCallsPerMonth"),
        )


class TierRangeCalculator:
    def __init__(self, lookup: SubscriptionLookup):
        self.lookup = lookup

    def resolve_tier(self, subscriber_id: str) -> Tuple[TierConfig, bool]:
        """
        Resolve the subscriber's tier.

        Returns:
            (tier config, degraded) where degraded is True when the lookup failed
            or the subscription is inactive and the most restrictive tier applies
        """
        try:
            info = self.lookup.get_subscription_info(subscriber_id)
        except Exception as e:
            logger.warning(
                "Tier lookup failed, using most restrictive tier",
                subscriber_id=subscriber_id,
                tier=MOST_RESTRICTIVE_TIER.name,
                error=str(e),
            )
            return get_tier_config(MOST_RESTRICTIVE_TIER), True

        if not info.is_active:
            logger.warning(
                "Subscription inactive, using most restrictive tier",
                subscriber_id=subscriber_id,
                reported_tier=info.tier.name,
            )
            return get_tier_config(MOST_RESTRICTIVE_TIER), True

        # Windows and sync eligibility come from the local table, not the collaborator
        return get_tier_config(info.tier), False

    def can_continue_sync(self, subscriber_id: str) -> bool:
        tier_config, _ = self.resolve_tier(subscriber_id)
        return tier_config.continuous_sync

    def calculate_range(
        self,
        subscriber_id: str,
        chain: ChainId,
        deployment_block: int,
        current_block: int,
    ) -> BlockRange:
        """
        Compute ``[start_block, end_block)`` for the subscriber.

        ``start_block = max(deployment_block, current_block - days * blocks_per_day)``
        and ``end_block = current_block``.

        Raises:
            ValueError: If the deployment block is past the current block
        """
        if deployment_block < 0 or current_block < 0:
            raise ValueError("Block numbers cannot be negative")
        if deployment_block > current_block:
            raise ValueError(f"Deployment block {deployment_block} is past current block {current_block}")

        tier_config, degraded = self.resolve_tier(subscriber_id)
        blocks_per_day = get_chain_config(chain).blocks_per_day
        max_blocks = tier_config.historical_days * blocks_per_day
        start_block = max(deployment_block, current_block - max_blocks)

        block_range = BlockRange(
            start_block=start_block,
            end_block=current_block,
            tier=tier_config.tier,
            historical_days=tier_config.historical_days,
            continuous_sync=tier_config.continuous_sync,
            max_blocks=max_blocks,
            tier_degraded=degraded,
        )
        logger.info(
            "Block range calculated",
            subscriber_id=subscriber_id,
            chain=chain.value,
            **block_range.to_dict(),
        )
        return block_range
