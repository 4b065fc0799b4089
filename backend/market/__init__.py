"""Market data primitives shared by the backtesting engine.

This package contains pure logic with no I/O: the candle model, timeframe
label parsing and candle aggregation into coarser timeframes.
"""
