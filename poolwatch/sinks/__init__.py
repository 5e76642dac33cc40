from poolwatch.sinks.dispatcher import QuoteDispatcher
from poolwatch.sinks.interface import OutputSink
from poolwatch.sinks.log_sink import LogSink
from poolwatch.sinks.quote_board import QuoteBoard

__all__ = ["OutputSink", "LogSink", "QuoteBoard", "QuoteDispatcher"]
