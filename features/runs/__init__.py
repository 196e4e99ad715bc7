"""
Runs feature — durable records of finished control-loop runs and the
checkpoints taken before continuations.

Public API:
    from features.runs import db as run_db
"""
