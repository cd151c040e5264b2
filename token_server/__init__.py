"""
Credential authority for realtime voice sessions.

Issues one short-lived credential plus behavior instructions per session
start. The long-lived provider key never leaves this process unless
TOKEN_MODE=passthrough is configured explicitly.
"""
