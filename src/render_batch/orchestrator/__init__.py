"""Generation-job orchestration over a slow asynchronous render API.

A job is split into chunks by the dispatcher and published to an
at-least-once channel. The chunk processor creates one external render task
per unit and stores a task row for it. The poller reconciles pending rows
against the render API on a fixed cadence, retries within a bounded budget and
dead-letters exhausted units.

Every state change is a conditional write against SQLite (expected prior
status and attempt counter in the WHERE clause, ``rowcount`` checked), so
redelivered chunk messages and overlapping poller passes are safe without a
lock service.
"""
