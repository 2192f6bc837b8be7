"""Job orchestration engine for keyword discovery.

Drives one analysis request through five sequential phases, tracking
progress and logs per phase and exposing pollable/streamable state.

Architecture (bottom-up):
- schemas: Job, phase, log and keyword models (pydantic)
- errors: Error taxonomy
- db / job_store: Job persistence (SQLite/Postgres or in-memory), cancellation flags
- batch_processor: Rate-limited, bounded-concurrency per-item fan-out
- phase_runner: Per-phase progress/log instrumentation, collaborator timeouts
- keyword_metrics: Keyword validation, fallback extraction, enrichment, statistics
- orchestrator: The five-phase pipeline, one daemon thread per job
- progress: Snapshot and streaming views
- service: submit / poll / stream / fetch_results / cancel
"""
