"""
FastAPI dependency providers for services and external collaborators.
Tests swap these through app.dependency_overrides.
"""
from functools import lru_cache

from fastapi import Depends

from crud.entitlement import EntitlementRepository
from jobs.import_job_manager import ImportJobManager, import_jobs
from services.billing_provider import BillingProvider, StripeBillingProvider
from services.billing_service import BillingService
from services.email_service import EmailService
from services.entitlement_service import EntitlementService


@lru_cache
def get_billing_provider() -> BillingProvider:
    return StripeBillingProvider()


def get_entitlement_repository() -> EntitlementRepository:
    return EntitlementRepository()


def get_email_service() -> EmailService:
    return EmailService()


def get_entitlement_service(
    repository: EntitlementRepository = Depends(get_entitlement_repository),
    provider: BillingProvider = Depends(get_billing_provider),
) -> EntitlementService:
    return EntitlementService(repository, provider)


def get_billing_service(
    entitlements: EntitlementService = Depends(get_entitlement_service),
    provider: BillingProvider = Depends(get_billing_provider),
    email_service: EmailService = Depends(get_email_service),
) -> BillingService:
    return BillingService(entitlements, provider, email_service)


def get_import_jobs() -> ImportJobManager:
    return import_jobs
