from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from subsidy_signing.api.dependencies.providers import get_application_service, get_tenants
from subsidy_signing.core.tenants import TenantRegistry
from subsidy_signing.schemas.application import BankStatementResponse, CompanyInfo, CompanyInfoResponse
from subsidy_signing.schemas.signing import AuthorizedRepresentativeResponse
from subsidy_signing.services.application_service import ApplicationService

router = APIRouter(prefix="/applications", tags=["applications"])


@router.post("/company-info", response_model=CompanyInfoResponse)
async def submit_company_info(
    payload: CompanyInfo,
    service: ApplicationService = Depends(get_application_service),
) -> CompanyInfoResponse:
    """Create the application folder, or rename it when ``folderId`` is given."""
    result = await service.submit_company_info(payload)
    return CompanyInfoResponse(
        folder_id=result.folder_id,
        folder_path=result.folder_path,
        message="Company info submitted successfully" if result.created else "Company info updated successfully",
    )


@router.post("/bank-statement", response_model=BankStatementResponse)
async def upload_bank_statement(
    file: UploadFile = File(...),
    folder_id: str = Form(..., alias="folderId", min_length=1),
    application_id: str = Form(..., alias="applicationId", min_length=1),
    kvk_nummer: Optional[str] = Form(default=None, alias="kvkNummer"),
    bedrijfsnaam: Optional[str] = Form(default=None),
    service: ApplicationService = Depends(get_application_service),
) -> BankStatementResponse:
    content = await file.read()
    artifact = await service.upload_bank_statement(
        folder_id=folder_id,
        application_id=application_id,
        file_name=file.filename or "",
        content=content,
        company_name=bedrijfsnaam,
        kvk_number=kvk_nummer,
    )
    return BankStatementResponse(
        folder_id=artifact.folder_id,
        file_name=artifact.file_name,
        item_id=artifact.item_id,
        web_url=artifact.web_url,
    )


@router.get("/authorized-representative", response_model=AuthorizedRepresentativeResponse)
async def get_authorized_representative(
    tenant_id: Optional[str] = Query(default=None, alias="tenantId"),
    tenants: TenantRegistry = Depends(get_tenants),
) -> AuthorizedRepresentativeResponse:
    """Representative printed on the authorisation form for the tenant."""
    resolution = tenants.resolve(tenant_id)
    representative = resolution.config.authorized_representative
    return AuthorizedRepresentativeResponse(
        tenant_id=resolution.tenant_id,
        organisation=representative.organisation,
        name=representative.name,
        email=representative.email,
        phone=representative.phone,
        kvk_number=representative.kvk_number,
    )
