"""In-memory collaborators for tests and local runs.

Everything here implements the protocols in
:mod:`calendar_automation.core.ports` without I/O and has no dependency on
pytest, so it can be used from the CLI's dry run as well as from tests.
"""

from __future__ import annotations

from calendar_automation.testing.stores import (
    InMemoryEntityStore,
    InMemoryRuleStore,
    RecordingNotifier,
)

__all__ = ["InMemoryEntityStore", "InMemoryRuleStore", "RecordingNotifier"]
