"""
sync — Bulletin ingestion pipeline and its periodic scheduling.

Sub-modules:
    orchestrator  — fetch → store → regions → statuses → changes → notify
    scheduler     — asyncio loop running sync and reminder jobs on a cadence
"""
