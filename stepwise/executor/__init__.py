"""Step execution engine.

Takes a plan and a selection intent and drives each selected step through
strategize, execute, drift, review and finalize, persisting progress in the
session store as it goes.

Architecture (bottom-up):
- step_resolver: Selection intent -> ordered, dependency-checked step list
- drift: Classifies changed files against the expected touch set
- review_loop: Bounded review/revise loop with a retry cap
- impl_log: Size-rotated implementation log of completed steps
- finalization: Log, commit and ticket closure per step; publish per session
- error_sink: Error artifacts and failed-session bookkeeping
- cancellation: Per-session cancellation flags
- workflow_runner: Top-level run over the selected steps
"""
