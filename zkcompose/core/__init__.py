"""Core orchestration: receipts, programs, provers, jobs and submission."""
