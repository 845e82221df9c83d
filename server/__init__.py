"""Job queue, crawler engine and worker process."""
