"""Orchestration services: pools, task queues, host selection and migration."""
