"""
Exception hierarchy for the trading agent.

Data errors degrade signals to neutral. Sizing, broker and store errors abort
a single tick's action. Invariant violations are programming errors and are
never recovered from.
"""


class GxtAgentError(Exception):
    """Base class for all agent errors."""


class ConfigError(GxtAgentError):
    """Invalid configuration value."""


class DataError(GxtAgentError):
    """Insufficient, stale or malformed market data."""


class SizingError(GxtAgentError):
    """Position could not be sized (non-positive stop distance or zero quantity)."""


class BrokerError(GxtAgentError):
    """Broker call failed. Retryable unless it is a rejection."""


class BrokerRejected(BrokerError):
    """Broker refused the order. Not retried."""


class BrokerTimeout(BrokerError):
    """Broker call exceeded its timeout."""


class StoreError(GxtAgentError):
    """Write or read failure at the persistence boundary."""


class InvariantViolation(GxtAgentError):
    """A core invariant would be broken by the requested action."""


class TradeStateError(InvariantViolation):
    """Illegal trade state transition."""
