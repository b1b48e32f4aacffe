"""Orchestrator components.

- Settings loaded from .env
- Structured logging
- Agent catalog and workflow templates
- The workflow runner and the orchestration script interpreter
"""
