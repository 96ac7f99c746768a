"""
notifications — Persist-then-deliver notification fan-out.

Sub-modules:
    channels/    — Per-channel senders (SMS, email, push) behind capability interfaces
    dispatcher   — Audience selection, persistence and best-effort delivery
"""
