"""Plan-driven fault injection stubs, call-site return checks and return-value profiling."""

__version__ = "0.1.0"