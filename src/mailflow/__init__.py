"""mailflow: durable email automation.

Deferred rule actions with a recovery sweep, resumable bulk mailbox
processing and summarized digests, all driven by a SQLite-backed job queue.
"""

__version__ = "0.1.0"
