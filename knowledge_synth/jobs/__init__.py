"""Background jobs: transactional execution, batch loops, scheduling and the pipeline jobs."""
