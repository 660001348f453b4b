"""Support Triage Agent: AI-assisted triage of customer-support email threads.

Architecture Overview
=====================

Each support thread is handled by a **Worker** that owns one reasoning loop:

1. **EmailAgent** (``agent.py``): a LangGraph StateGraph with an ``agent``
   node (Claude bound to the tool schemas) and a ``tools`` node that
   dispatches the requested tool calls in order.  The loop ends when
   ``write_draft`` succeeds, when a stop is requested, or when the turn
   budget is spent.

2. **Worker** (``worker.py``): explicit lifecycle state machine
   (idle/starting/running/stopping/stopped/error/failed) with restart
   backoff and a subscribable event stream.

3. **WorkerManager** (``worker_manager.py``): keeps at most one worker per
   thread and reaps finished workers.

Every tool call is written to the **ActionLog** (``action_log.py``) whether it
succeeds or fails.

Package Structure
-----------------
- ``triage_agent/agent.py``: reasoning loop
- ``triage_agent/config.py``: configuration from env vars / SSM
- ``triage_agent/prompts.py``: system prompt and thread context
- ``triage_agent/server.py``: FastAPI application
- ``triage_agent/main.py``: CLI for single runs
- ``triage_agent/services/``: SQLite store, vector store client, metrics
- ``triage_agent/tools/``: tool registry and the support tools
- ``triage_agent/api/``: FastAPI routes and Pydantic schemas
"""
