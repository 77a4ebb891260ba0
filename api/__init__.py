"""
API package for the NeuroData Hub FastAPI backend.

This package provides the REST API endpoints for:
- Credits and the credit ledger (credits.py, credit_ledger.py)
- Stripe checkout, webhooks and subscriptions (billing.py, stripe_config.py)
- Workflow CRUD, execution and AI assistants (workflows.py, workflow_run.py, workflow_ai.py)
- Cloud compute jobs (cloud_jobs.py) and their worker (jobs/)
- Result analysis workbench (workflow_analysis.py)
- Personalized suggestions and trending examples (suggestions.py, trends.py)
- Onboarding and account deletion (account.py)
- System health and info (system.py)
"""

from .jobs import Job, JobStatus, JobType, job_manager
from .store_adapter import StoreAdapter, StoreError, get_store

__all__ = [
    "get_store",
    "StoreAdapter",
    "StoreError",
    "job_manager",
    "Job",
    "JobStatus",
    "JobType",
]
