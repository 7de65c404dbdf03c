"""Wiring of the default engine from settings and the database store."""

import logging
from dataclasses import dataclass

from tradebot.engine.pair_job import PairProcessor
from tradebot.engine.scheduler import TickController
from tradebot.services.ai_orchestrator import DecisionOrchestrator
from tradebot.services.binance_client import create_binance_client
from tradebot.services.exchange import BinanceExchange
from tradebot.services.market_data import BinanceMarketData
from tradebot.services.store import TradingStore

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    controller: TickController
    client: object  # binance AsyncClient

    async def close(self):
        self.controller.shutdown()
        await self.client.close_connection()
        logger.info("Engine closed")


async def build_engine(store: TradingStore | None = None) -> Engine:
    """Open the exchange client, initialize AI providers and build a controller."""
    store = store or TradingStore()
    client = await create_binance_client(store)
    orchestrator = DecisionOrchestrator(store)
    await orchestrator.initialize()
    processor = PairProcessor(
        market_data=BinanceMarketData(client),
        exchange=BinanceExchange(client),
        orchestrator=orchestrator,
        store=store,
    )
    return Engine(controller=TickController(processor, store), client=client)
