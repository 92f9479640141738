"""Reconciliation orchestrator for backlog tasks executed by CLI coding agents.

Why not a generic job queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not dispatching work, it is deciding whether the work
actually happened. The agent is a non-deterministic black box that reports
its own outcome, so every run is reconciled against observable state:

- Acceptance criteria live as checkboxes in the task body and are updated
  positionally from the live text, never from cached indices.
- A self-reported ``done`` is only accepted when the working tree changed or
  a declared file exists; one corrective retry is issued otherwise.
- A watchdog aborts stale executions and a per-task failure ledger halts all
  automation when one task keeps failing.

Exactly one task runs at a time. Scheduling requests arriving during a pass
are coalesced into a single follow-up pass.
"""
