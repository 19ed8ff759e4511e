"""
Headless Audit - run Lighthouse against throwaway headless renderers.

Every audit gets its own renderer process, debugging port and profile
directory, all of which are torn down once the report has been captured.

Quick Start:
    from headless_audit import Orchestrator, load_settings, parse_request

    orchestrator = Orchestrator(load_settings())
    outcome = orchestrator.audit(parse_request("https://example.com", "json"))
    print(outcome.mime_type, len(outcome.payload))

Or serve it over HTTP:
    python -m headless_audit.server --port 8080
"""

from .config import Settings, load_settings
from .errors import (
    AuditServiceError,
    CleanupError,
    ExecutionError,
    Overloaded,
    ResourceAllocationError,
    ValidationError,
)
from .orchestrator import AuditOutcome, AuditRequest, Orchestrator, parse_request

__all__ = [
    "AuditOutcome",
    "AuditRequest",
    "AuditServiceError",
    "CleanupError",
    "ExecutionError",
    "Orchestrator",
    "Overloaded",
    "ResourceAllocationError",
    "Settings",
    "ValidationError",
    "load_settings",
    "parse_request",
]
