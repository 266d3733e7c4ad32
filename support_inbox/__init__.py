# support_inbox/__init__.py
"""
Support Inbox Engine

Thread lifecycle, identity verification, escalation handling and
continuous learning for an AI-assisted customer support inbox.
"""

__version__ = "1.0.0"
