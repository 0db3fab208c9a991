"""
Application folder service.

Keeps the drive folder of an application in step with the company details
entered in the first intake step and stores supporting documents in it.
"""

import io
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font

from subsidy_signing.core.errors import StorageError, ValidationError
from subsidy_signing.core.logging import get_logger
from subsidy_signing.integrations.storage.graph_drive import GraphDriveService, StoredArtifact, sanitize_name
from subsidy_signing.schemas.application import CompanyInfo

logger = get_logger(__name__)

COMPANY_DATA_FILE_NAME = "Bedrijfsinfo.xlsx"
COMPANY_DATA_SHEET = "Company Data"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
MAX_BANK_STATEMENT_BYTES = 10 * 1024 * 1024

COMPANY_DATA_COLUMNS = (
    ("application_id", "Applicatie ID", 20),
    ("tenant_id", "Tenant ID", 15),
    ("datum", "Datum", 12),
    ("bedrijfsnaam", "Bedrijfsnaam", 25),
    ("kvk_nummer", "KvK-nummer", 12),
    ("btw_id", "BTW-identificatienummer", 18),
    ("website", "Website", 30),
    ("adres", "Adres", 30),
    ("postcode", "Postcode", 10),
    ("plaats", "Plaats", 20),
    ("provincie", "Provincie", 20),
    ("nace_classificatie", "NACE-classificatie", 18),
    ("contact_naam", "Contactpersoon", 25),
    ("contact_telefoon", "Telefoonnummer", 15),
    ("contact_email", "Email", 30),
    ("contact_geslacht", "Geslacht", 10),
    ("hoofdcontact_persoon", "Vertegenwoordiger", 15),
)


@dataclass
class FolderResult:
    folder_id: str
    folder_path: Optional[str]
    created: bool


def company_data_workbook(info: CompanyInfo) -> bytes:
    """One header row and one data row, ready for CRM import."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = COMPANY_DATA_SHEET

    sheet.append([label for _, label, _ in COMPANY_DATA_COLUMNS])
    sheet.append([getattr(info, key) or "" for key, _, _ in COMPANY_DATA_COLUMNS])
    for index, (_, _, width) in enumerate(COMPANY_DATA_COLUMNS, start=1):
        cell = sheet.cell(row=1, column=index)
        cell.font = Font(bold=True)
        sheet.column_dimensions[cell.column_letter].width = width
    sheet.auto_filter.ref = sheet.dimensions

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def company_data_file_name(company_name: Optional[str] = None) -> str:
    sanitized = sanitize_name(company_name or "").strip()
    return f"{sanitized} - {COMPANY_DATA_FILE_NAME}" if sanitized else COMPANY_DATA_FILE_NAME


def bank_statement_file_name(company_name: Optional[str], now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    sanitized = sanitize_name(company_name or "").strip()
    prefix = f"{sanitized} - " if sanitized else ""
    return f"{prefix}bankafschrift-{now.strftime('%Y%m%d-%H%M%S')}.pdf"


class ApplicationService:
    def __init__(self, drive: GraphDriveService):
        self.drive = drive

    async def submit_company_info(self, info: CompanyInfo) -> FolderResult:
        """
        Create the application folder, or rename an existing one.

        With ``folder_id`` the folder is renamed to the application id and the
        company workbook is replaced. Without it the folder is created (or
        found) under the tenant root and the workbook uploaded.
        """
        workbook = company_data_workbook(info)
        file_name = company_data_file_name()

        if info.folder_id:
            await self.drive.rename_folder(info.folder_id, info.application_id)
            await self.drive.replace_file(info.folder_id, file_name, workbook, XLSX_CONTENT_TYPE)
            logger.info("application.company_info_updated", application_id=info.application_id, folder_id=info.folder_id)
            return FolderResult(folder_id=info.folder_id, folder_path=None, created=False)

        folder_id, folder_path = await self.drive.create_application_folder(info.application_id, info.tenant_id)
        await self.drive.upload_with_retry(folder_id, workbook, file_name, XLSX_CONTENT_TYPE)
        await self.drive.record_audit(folder_id, "company_info", info.model_dump(by_alias=True))
        logger.info("application.company_info_created", application_id=info.application_id, folder_id=folder_id)
        return FolderResult(folder_id=folder_id, folder_path=folder_path, created=True)

    async def verify_folder(self, folder_id: str, application_id: str) -> None:
        """
        Check that ``folder_id`` is the folder of ``application_id``.

        Raises:
            ValidationError: If the folder belongs to another application
        """
        item = await self.drive.get_item(folder_id)
        expected = sanitize_name(application_id)
        name = str(item.get("name") or "")
        if "folder" not in item or name != expected:
            logger.warning("application.folder_mismatch", folder_id=folder_id, application_id=application_id)
            raise ValidationError(
                "Folder validation failed for supplied applicationId",
                errors=["folderId does not belong to applicationId"],
                error_code="folder_mismatch",
            )

    async def upload_bank_statement(
        self,
        folder_id: str,
        application_id: str,
        file_name: str,
        content: bytes,
        company_name: Optional[str] = None,
        kvk_number: Optional[str] = None,
    ) -> StoredArtifact:
        """
        Store a bank statement PDF with a timestamped name, keeping history.

        Raises:
            ValidationError: If the file is not a PDF, is too large or the folder does not match
            StorageError: If the upload fails after retries
        """
        errors = []
        if not file_name.lower().endswith(".pdf"):
            errors.append("Only PDF files are allowed")
        if len(content) > MAX_BANK_STATEMENT_BYTES:
            errors.append("File size must be less than 10MB")
        if not content:
            errors.append("File is empty")
        if errors:
            raise ValidationError("Invalid bank statement", errors=errors)

        await self.verify_folder(folder_id, application_id)

        stored_name = bank_statement_file_name(company_name)
        artifact = await self.drive.upload_with_retry(folder_id, content, stored_name, conflict_behavior="fail")
        try:
            await self.drive.record_audit(folder_id, "bank_statement", {
                "applicationId": application_id,
                "folderId": folder_id,
                "originalFileName": file_name,
                "storedFileName": artifact.file_name,
                "fileSize": len(content),
                "kvkNummer": kvk_number,
                "bedrijfsnaam": company_name,
            })
        except StorageError as e:
            logger.error("application.audit_failed", folder_id=folder_id, error=e.error_message)

        logger.info("application.bank_statement_uploaded", application_id=application_id, file_name=artifact.file_name)
        return artifact
