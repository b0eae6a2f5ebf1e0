"""
Core package: cross-cutting concerns shared by the API, CLI and scheduler.

Modules:
    config          settings from env / .env, validated at load
    logging_config  JSON or pretty logs, bind_log_context
    errors          exception hierarchy and FastAPI handlers
    health          database, lock, bulletin freshness and push checks
    database        SQLAlchemy engine and sessions
    run_guard       single-flight locks (local or Redis)
    middleware      request correlation ids and timing
"""
