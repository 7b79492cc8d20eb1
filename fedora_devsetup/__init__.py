"""Fedora developer workstation setup (provision + verify).

Core design goals:
- Idempotent steps (existence check before every install)
- Best-effort runs: one failed step or check never stops the rest
- Manifest-driven tool lists
- Bounded, timed external commands
- Crash-resilient verification report
- Centralized logging
"""

__all__ = []
