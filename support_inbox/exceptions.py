"""
Engine error taxonomy.

Services raise these; agents catch them at their public entry points and
fold them into typed results. Not-found orders and flagged accounts are
verification statuses, never exceptions.
"""


class SupportEngineError(Exception):
    """Base class for all engine errors"""


class ConfigurationError(SupportEngineError):
    """An integration is missing credentials or is switched off"""


class ExternalServiceError(SupportEngineError):
    """A collaborator (order lookup, LLM, embeddings, mail) failed or timed out"""


class ParseFailure(SupportEngineError):
    """Generated output did not match the expected shape"""


class InvalidTransitionError(SupportEngineError):
    """A thread state change is not in the transition table, or lost a race"""


class NotFoundError(SupportEngineError):
    """A referenced thread, proposal or record does not exist"""
