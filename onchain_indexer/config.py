from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import field_validator
from pydantic_core.core_schema import ValidationInfo
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    DB_USER: str = "user"
    DB_PASSWORD: str = "password"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "onchain_indexer"
    DATABASE_URL: Optional[str] = None

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str], info: ValidationInfo) -> Any:
        if isinstance(v, str):
            return v
        values = info.data
        return (
            f"postgresql+psycopg2://{values.get('DB_USER')}:{values.get('DB_PASSWORD')}@"
            f"{values.get('DB_HOST')}:{values.get('DB_PORT')}/{values.get('DB_NAME')}"
        )

    # Progress fan-out through Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    PROGRESS_REDIS_ENABLED: bool = False
    PROGRESS_TTL: int = 3600

    # RPC transport
    RPC_TIMEOUT: float = 30.0
    RPC_RETRIES: int = 2
    RPC_BACKOFF_BASE: float = 0.5
    RPC_BACKOFF_MAX: float = 10.0
    RPC_CACHE_TTL: float = 60.0
    RPC_CACHE_MAX_ENTRIES: int = 10000
    ENDPOINT_FAILURE_THRESHOLD: int = 3
    RPC_ERROR_LOG_SIZE: int = 100

    # Comma-separated endpoint lists that take priority over the built-in providers
    ETHEREUM_RPC_URLS: Optional[str] = None
    LISK_RPC_URLS: Optional[str] = None

    # Indexing settings
    CHUNK_SIZE: int = 200000
    MAX_CONCURRENT_CHUNKS: int = 1  # Sequential processing
    LOG_QUERY_SPAN: int = 10000  # Blocks per eth_getLogs request
    CHUNK_TIMEOUT: float = 900.0  # Wall-clock budget per chunk (seconds)

    # Error handling
    MAX_RETRIES: int = 3
    RETRY_DELAY: float = 2.0

    # Monitoring
    LOG_LEVEL: str = "INFO"
    HEALTH_CHECK_INTERVAL: int = 60
    POLLING_INTERVAL: int = 30
    PROVIDER_MIN_SUCCESS_RATE: float = 0.5

    # Deployment lookup
    DEPLOYMENT_FALLBACK_DAYS: int = 30
    EXPLORER_API_KEY: Optional[str] = None

    # Subscription service (tier lookup)
    SUBSCRIPTION_SERVICE_URL: Optional[str] = None

    # API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8083

    INDEXER_VERSION: str = "1.0.0"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()


class ChainId(str, Enum):
    ETHEREUM = "ethereum"
    LISK = "lisk"


class SubscriptionTier(IntEnum):
    FREE = 0
    STARTER = 1
    PRO = 2
    ENTERPRISE = 3


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    urls: Tuple[str, ...]
    priority: int


@dataclass(frozen=True)
class ChainConfig:
    chain: ChainId
    name: str
    evm_chain_id: int
    block_time: float  # seconds
    blocks_per_day: int
    explorer_api: Optional[str]
    providers: Tuple[ProviderConfig, ...]
    chunk_size: Optional[int] = None


@dataclass(frozen=True)
class TierConfig:
    tier: SubscriptionTier
    name: str
    historical_days: int
    continuous_sync: bool
    max_concurrent: int
    requests_per_minute: int
    batch_width: int
    api_calls_per_month: int
    max_contracts: int
    extra: Dict[str, Any] = field(default_factory=dict)


CHAIN_CONFIGS: Dict[ChainId, ChainConfig] = {
    ChainId.ETHEREUM: ChainConfig(
        chain=ChainId.ETHEREUM,
        name="Ethereum",
        evm_chain_id=1,
        block_time=12.0,
        blocks_per_day=7200,
        explorer_api="https://api.etherscan.io/api",
        providers=(
            ProviderConfig("publicnode", ("https://ethereum-rpc.publicnode.com",), 1),
            ProviderConfig("public-rpc", ("https://eth.public-rpc.com", "https://eth.llamarpc.com"), 2),
        ),
    ),
    ChainId.LISK: ChainConfig(
        chain=ChainId.LISK,
        name="Lisk",
        evm_chain_id=1135,
        block_time=12.0,
        blocks_per_day=7200,
        explorer_api="https://blockscout.lisk.com/api",
        providers=(
            ProviderConfig("lisk-api", ("https://rpc.api.lisk.com",), 1),
            ProviderConfig("drpc", ("https://lisk.drpc.org",), 2),
            ProviderConfig("tenderly", ("https://lisk.gateway.tenderly.co",), 3),
        ),
    ),
}

TIER_CONFIGS: Dict[SubscriptionTier, TierConfig] = {
    SubscriptionTier.FREE: TierConfig(
        tier=SubscriptionTier.FREE,
        name="Free",
        historical_days=30,
        continuous_sync=False,
        max_concurrent=2,
        requests_per_minute=30,
        batch_width=5,
        api_calls_per_month=1000,
        max_contracts=5,
    ),
    SubscriptionTier.STARTER: TierConfig(
        tier=SubscriptionTier.STARTER,
        name="Starter",
        historical_days=90,
        continuous_sync=True,
        max_concurrent=3,
        requests_per_minute=60,
        batch_width=10,
        api_calls_per_month=10000,
        max_contracts=20,
    ),
    SubscriptionTier.PRO: TierConfig(
        tier=SubscriptionTier.PRO,
        name="Pro",
        historical_days=365,
        continuous_sync=True,
        max_concurrent=5,
        requests_per_minute=100,
        batch_width=20,
        api_calls_per_month=50000,
        max_contracts=100,
    ),
    SubscriptionTier.ENTERPRISE: TierConfig(
        tier=SubscriptionTier.ENTERPRISE,
        name="Enterprise",
        historical_days=730,
        continuous_sync=True,
        max_concurrent=10,
        requests_per_minute=300,
        batch_width=50,
        api_calls_per_month=250000,
        max_contracts=1000,
    ),
}

# Used whenever the subscriber's tier cannot be established.
MOST_RESTRICTIVE_TIER = SubscriptionTier.FREE


def _split_urls(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(url.strip() for url in raw.split(",") if url.strip())


def parse_chain(chain: Any) -> ChainId:
    """Resolve a chain name (case-insensitive) to its enum member."""
    if isinstance(chain, ChainId):
        return chain
    try:
        return ChainId(str(chain).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported chain: {chain}")


def get_chain_config(chain: Any, overrides: Optional[Settings] = None) -> ChainConfig:
    """
    Get the configuration of a chain, with environment endpoint overrides applied.

    An override list becomes an extra provider named "env" ahead of the built-in ones.
    """
    chain_id = parse_chain(chain)
    config = CHAIN_CONFIGS[chain_id]
    active = overrides or settings

    env_urls = _split_urls(getattr(active, f"{chain_id.name}_RPC_URLS", None))
    if env_urls:
        providers = (ProviderConfig("env", env_urls, 0),) + config.providers
        config = replace(config, providers=providers)

    if config.chunk_size is None:
        config = replace(config, chunk_size=active.CHUNK_SIZE)
    return config


def get_tier_config(tier: Any) -> TierConfig:
    """Resolve a tier number or name to its config, falling back to the most restrictive tier."""
    try:
        if isinstance(tier, str) and not tier.isdigit():
            return TIER_CONFIGS[SubscriptionTier[tier.strip().upper()]]
        return TIER_CONFIGS[SubscriptionTier(int(tier))]
    except (KeyError, ValueError, TypeError):
        return TIER_CONFIGS[MOST_RESTRICTIVE_TIER]


def validate_tables(
    chains: Optional[Dict[ChainId, ChainConfig]] = None,
    tiers: Optional[Dict[SubscriptionTier, TierConfig]] = None,
) -> None:
    """
    Validate the chain and tier tables. Called once at startup.

    Raises:
        ValueError: If any entry is inconsistent
    """
    chains = CHAIN_CONFIGS if chains is None else chains
    tiers = TIER_CONFIGS if tiers is None else tiers
    errors: List[str] = []

    for chain_id in ChainId:
        if chain_id not in chains:
            errors.append(f"missing chain config: {chain_id.value}")

    for chain_id, config in chains.items():
        if config.chain != chain_id:
            errors.append(f"{chain_id.value}: config registered under wrong key")
        if config.block_time <= 0 or config.blocks_per_day <= 0:
            errors.append(f"{chain_id.value}: block time and blocks per day must be positive")
        if not config.providers:
            errors.append(f"{chain_id.value}: no providers configured")
        names = [p.name for p in config.providers]
        if len(names) != len(set(names)):
            errors.append(f"{chain_id.value}: duplicate provider names")
        for provider in config.providers:
            if not provider.urls:
                errors.append(f"{chain_id.value}/{provider.name}: no endpoint urls")
            for url in provider.urls:
                if not url.startswith(("http://", "https://")):
                    errors.append(f"{chain_id.value}/{provider.name}: invalid url {url}")
        if config.chunk_size is not None and config.chunk_size <= 0:
            errors.append(f"{chain_id.value}: chunk size must be positive")

    for tier in SubscriptionTier:
        if tier not in tiers:
            errors.append(f"missing tier config: {tier.name}")

    ordered = [tiers[t] for t in sorted(tiers)]
    for config in ordered:
        if config.historical_days <= 0:
            errors.append(f"{config.name}: historical window must be positive")
        if config.max_concurrent <= 0 or config.requests_per_minute <= 0 or config.batch_width <= 0:
            errors.append(f"{config.name}: queue limits and batch width must be positive")
    for lower, higher in zip(ordered, ordered[1:]):
        if higher.historical_days < lower.historical_days:
            errors.append(f"{higher.name}: historical window smaller than {lower.name}")
        if higher.max_concurrent < lower.max_concurrent or higher.requests_per_minute < lower.requests_per_minute:
            errors.append(f"{higher.name}: queue ceilings lower than {lower.name}")

    most_restrictive = tiers.get(MOST_RESTRICTIVE_TIER)
    if most_restrictive and ordered and most_restrictive.historical_days != ordered[0].historical_days:
        errors.append("most restrictive tier does not have the smallest historical window")

    if errors:
        raise ValueError("Invalid chain/tier configuration: " + "; ".join(errors))
