# support_inbox/agents/__init__.py
"""
Agents for the Support Inbox

Each module exposes a class and a global instance:
- Verification Gate: identity check before order-related actions
- Escalation Notifier: supervisor escalation emails
- Escalation Response Router: turns tagged supervisor replies into actions
- Draft Agent: customer-facing drafts saved for review
- Knowledge Agent: duplicate detection and publication
- Learning Agent: resolution analysis and proposal review
"""
