"""Group moderation.

Self-contained modules:
- policy (group policy record + patch validation)
- flood (sliding-window counter per sender)
- rule engine (deterministic matching)
- action engine (provider calls with bounded retries)
- pipeline (ordered evaluation, one action per message)
"""
