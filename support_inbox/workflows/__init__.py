# support_inbox/workflows/__init__.py
"""
Thread Workflows

- state_machine: the thread lifecycle and its transition table
- support_workflow: the LangGraph workflow for inbound messages
"""
