from quotestream.market.candles import CandleBuffer
from quotestream.market.poller import QuotePoller
from quotestream.market.service import MarketDataService

__all__ = [
    "CandleBuffer",
    "MarketDataService",
    "QuotePoller",
]
