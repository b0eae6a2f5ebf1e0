"""
channels — Delivery backends.

Each channel exposes:
    deliver(token, title, body, data) → PushResponse

Channels only talk to the provider. Eligibility, auditing and retry live
in the dispatcher and the worker.
"""
