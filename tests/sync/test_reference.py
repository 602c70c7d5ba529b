"""Tests for reference price sources."""

from datetime import timedelta

import pytest

from oracle_monitor.storage.repos import PriceObservationDTO, PriceObservationRepository
from oracle_monitor.sync import CrossProtocolReference, StaticReference


async def _seed(db, clock, rows) -> None:
    async with db.get_async_session() as session:
        await PriceObservationRepository(session).insert_many(
            [
                PriceObservationDTO(
                    instance_id=f"{protocol}-{chain}",
                    protocol=protocol,
                    chain=chain,
                    symbol="BTC/USD",
                    price=price,
                    timestamp=clock.now() - timedelta(seconds=age),
                )
                for protocol, chain, price, age in rows
            ]
        )


class TestCrossProtocolReference:
    """Tests for CrossProtocolReference."""

    @pytest.mark.asyncio
    async def test_median_of_other_protocols(self, db, clock) -> None:
        """The asking protocol is excluded and the rest are medianed."""
        await _seed(
            db,
            clock,
            [
                ("chainlink", "ethereum", 50000.0, 10),
                ("pyth", "ethereum", 50020.0, 10),
                ("redstone", "base", 50040.0, 10),
                ("uma", "ethereum", 1.0, 10),
            ],
        )
        reference = CrossProtocolReference(db, clock=clock)

        price = await reference.get_reference_price("BTC/USD", protocol="uma", chain="ethereum")

        assert price == pytest.approx(50020.0)

    @pytest.mark.asyncio
    async def test_stale_peers_ignored(self, db, clock) -> None:
        """Observations older than max_age_seconds do not count."""
        await _seed(db, clock, [("pyth", "ethereum", 50020.0, 600)])
        reference = CrossProtocolReference(db, max_age_seconds=300, clock=clock)

        assert await reference.get_reference_price("BTC/USD", protocol="chainlink", chain="ethereum") is None

    @pytest.mark.asyncio
    async def test_same_chain_only(self, db, clock) -> None:
        """same_chain restricts peers to the asker's chain."""
        await _seed(
            db,
            clock,
            [("pyth", "ethereum", 50020.0, 10), ("redstone", "base", 60000.0, 10)],
        )
        reference = CrossProtocolReference(db, same_chain=True, clock=clock)

        price = await reference.get_reference_price("BTC/USD", protocol="chainlink", chain="ethereum")

        assert price == pytest.approx(50020.0)


class TestStaticReference:
    """Tests for StaticReference."""

    @pytest.mark.asyncio
    async def test_set_price(self) -> None:
        """Prices can be updated after construction."""
        reference = StaticReference({"BTC/USD": 50000.0})
        reference.set_price("ETH/USD", 3000.0)

        assert await reference.get_reference_price("ETH/USD", protocol="pyth", chain="ethereum") == 3000.0
        assert await reference.get_reference_price("SOL/USD", protocol="pyth", chain="ethereum") is None
