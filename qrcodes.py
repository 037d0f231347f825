"""
QR codes that link printed documents and case reports back to the platform.

A document receives its code when it is created; a case receives one when its
review is completed and the report is generated. Scanning a code hits
GET /qrcodes/{code}, which resolves it and redirects to the client view.
"""
import base64
import io
import logging
import secrets
from typing import Optional

import qrcode

from config import settings
from database import now_utc
from errors import ApiError, ValidationError
from repositories import CaseRepository, DocumentRepository, qr_url

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ("document", "case")


def new_code() -> str:
    return secrets.token_urlsafe(12)


def render_png(data: str) -> bytes:
    img = qrcode.make(data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def client_url_for(resource_type: str, resource_id) -> str:
    if resource_type == "document":
        return f"{settings.client_url}/documents/view/{resource_id}"
    return f"{settings.client_url}/cases/report/{resource_id}"


class QRCodeService:

    def __init__(self, db):
        self.documents = DocumentRepository(db)
        self.cases = CaseRepository(db)

    def generate(self, data: str, label: Optional[str] = None) -> dict:
        """Render arbitrary text or a URL as a base64 PNG."""
        if not data:
            raise ValidationError.required_field("data")
        return {
            "data": data,
            "label": label,
            "image": "data:image/png;base64," + base64.b64encode(render_png(data)).decode(),
        }

    def resolve(self, code: str) -> dict:
        document = self.documents.find_by_qr_code(code, throw_if_not_found=False, projection=["title", "status"])
        if document:
            return {
                "type": "document",
                "id": document["_id"],
                "title": document.get("title"),
                "redirect_url": client_url_for("document", document["_id"]),
            }

        case = self.cases.find_one(
            {"report.qr_code": code, "is_deleted": {"$ne": True}},
            throw_if_not_found=False,
            projection=["title", "case_number", "status"],
        )
        if case:
            return {
                "type": "case",
                "id": case["_id"],
                "title": case.get("title"),
                "case_number": case.get("case_number"),
                "redirect_url": client_url_for("case", case["_id"]),
            }

        raise ApiError.not_found("QR code not found", "NOT_FOUND_QRCODE", {"code": code})

    def resource_code(self, resource_type: str, resource_id) -> dict:
        if resource_type not in RESOURCE_TYPES:
            raise ValidationError.invalid_format("type", f"Unsupported QR code resource type: {resource_type}")

        if resource_type == "document":
            document = self.documents.find_by_id(resource_id)
            code = (document.get("qr_code") or {}).get("code")
            if not code:
                code = new_code()
                self.documents.update_by_id(
                    document["_id"], {"qr_code": {"code": code, "url": qr_url(code), "generated_at": now_utc()}}
                )
                logger.info("Backfilled QR code for document %s", document["_id"])
            return {"type": "document", "id": document["_id"], "code": code, "url": qr_url(code)}

        case = self.cases.find_by_id(resource_id)
        code = (case.get("report") or {}).get("qr_code")
        if not code:
            raise ApiError.bad_request("Case report has not been generated yet", "CASE_REPORT_NOT_GENERATED")
        return {"type": "case", "id": case["_id"], "code": code, "url": qr_url(code)}

    def resource_png(self, resource_type: str, resource_id) -> bytes:
        return render_png(self.resource_code(resource_type, resource_id)["url"])
