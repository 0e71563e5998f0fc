"""Job worker: per-job state machine and process lifecycle."""
