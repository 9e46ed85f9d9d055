"""
Keystroke Gate Core

Feature extraction, risk models, challenge lifecycle and the auth
orchestrator. Import ``core.orchestrator`` for the composed flows.
"""
