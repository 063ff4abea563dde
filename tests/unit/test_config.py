from dataclasses import replace

import pytest

from onchain_indexer.config import (
    CHAIN_CONFIGS,
    TIER_CONFIGS,
    ChainId,
    Settings,
    SubscriptionTier,
    get_chain_config,
    get_tier_config,
    parse_chain,
    validate_tables,
)


def test_shipped_tables_are_valid():
    validate_tables()


def test_database_url_assembled():
    config = Settings(DB_USER="u", DB_PASSWORD="p", DB_HOST="db", DB_PORT=5433, DB_NAME="idx", DATABASE_URL=None)
    assert config.DATABASE_URL == "postgresql+psycopg2://u:p@db:5433/idx"


def test_database_url_explicit():
    assert Settings(DATABASE_URL="sqlite://").DATABASE_URL == "sqlite://"


@pytest.mark.parametrize("raw", ["ethereum", "Ethereum", " LISK ", ChainId.LISK])
def test_parse_chain(raw):
    assert parse_chain(raw) in (ChainId.ETHEREUM, ChainId.LISK)


def test_parse_chain_unknown():
    with pytest.raises(ValueError, match="Unsupported chain"):
        parse_chain("starknet")


def test_env_endpoints_take_priority():
    overrides = Settings(ETHEREUM_RPC_URLS="https://my-node.test, https://my-backup.test", CHUNK_SIZE=1000)
    config = get_chain_config(ChainId.ETHEREUM, overrides)

    assert config.providers[0].name == "env"
    assert config.providers[0].urls == ("https://my-node.test", "https://my-backup.test")
    assert config.providers[0].priority == 0
    assert len(config.providers) == len(CHAIN_CONFIGS[ChainId.ETHEREUM].providers) + 1
    assert config.chunk_size == 1000


def test_chain_config_without_overrides():
    config = get_chain_config("lisk", Settings(LISK_RPC_URLS=None))
    assert config.evm_chain_id == 1135
    assert config.providers == CHAIN_CONFIGS[ChainId.LISK].providers


@pytest.mark.parametrize("raw,expected", [(2, SubscriptionTier.PRO), ("3", SubscriptionTier.ENTERPRISE), ("starter", SubscriptionTier.STARTER)])
def test_get_tier_config(raw, expected):
    assert get_tier_config(raw).tier == expected


@pytest.mark.parametrize("raw", [None, 9, "platinum"])
def test_unknown_tier_falls_back_to_free(raw):
    assert get_tier_config(raw).tier == SubscriptionTier.FREE


def test_validate_rejects_missing_chain():
    chains = {ChainId.ETHEREUM: CHAIN_CONFIGS[ChainId.ETHEREUM]}
    with pytest.raises(ValueError, match="missing chain config: lisk"):
        validate_tables(chains=chains)


def test_validate_rejects_bad_url():
    ethereum = CHAIN_CONFIGS[ChainId.ETHEREUM]
    bad_provider = replace(ethereum.providers[0], urls=("ws://node.test",))
    chains = dict(CHAIN_CONFIGS)
    chains[ChainId.ETHEREUM] = replace(ethereum, providers=(bad_provider,))
    with pytest.raises(ValueError, match="invalid url"):
        validate_tables(chains=chains)


def test_validate_rejects_shrinking_windows():
    tiers = dict(TIER_CONFIGS)
    tiers[SubscriptionTier.PRO] = replace(tiers[SubscriptionTier.PRO], historical_days=10)
    with pytest.raises(ValueError, match="historical window"):
        validate_tables(tiers=tiers)
