from typing import Any

# -------- Aliases (clarify intent) --------
UnixMillis = int
Symbol = str  # caller-facing symbol, e.g. "AAPL"
StreamerSymbol = str  # protocol-native symbol, e.g. "AAPL" or "/ESZ24:XCME"
Period = str  # candle period, e.g. "1m","5m","1h","1d"
Frame = dict[str, Any]
