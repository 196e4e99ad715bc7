"""
Features package — the host-agnostic core of the task control loop.

  features/control/     state, dispatcher, loop and continuation
  features/resilience/  failure classification, retry presets, circuit
                        breaker, compensation ledger
  features/runs/        Postgres store for run records and checkpoints

Nothing here imports the Temporal workflow API; workflows/control.py binds
the core to Temporal.
"""
