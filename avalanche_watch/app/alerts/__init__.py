"""
alerts — Danger-change alerts and daily reminders.

Sub-modules:
    channels/    — Delivery backends (mobile push)
    rules        — Change matching and reminder scheduling
    messages     — Notification titles, bodies and data payloads
    dispatcher   — One delivery plus its audit record
    worker       — Background job queue with retry
    service      — Entry points used by the sync pipeline and scheduler
    models       — Data structures shared across the package
"""
