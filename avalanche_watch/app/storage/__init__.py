"""
storage — Persistent entities and query helpers.

Sub-modules:
    models      — SQLAlchemy ORM tables (bulletins, regions, locations, rules, ...)
    repository  — Query and upsert helpers shared by the pipeline and the API
"""
