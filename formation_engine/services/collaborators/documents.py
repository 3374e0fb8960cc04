"""Document filler client: reviewable certificates and filing documents."""

from typing import List, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from formation_engine.core.exceptions import CollaboratorResponseError
from formation_engine.domain.payloads import CorporationFormationPayload, LLCFormationPayload
from formation_engine.domain.schemas import CertificateSessionData, GeneratedDocument

from .base import CollaboratorClient

logger = structlog.get_logger(__name__)

Payload = Union[LLCFormationPayload, CorporationFormationPayload]


class DocumentFillerClient(CollaboratorClient):
    service_name = "document_filler"

    async def generate_certificate(self, payload: Payload) -> CertificateSessionData:
        """Produce a reviewable certificate with its own short-lived download link."""
        body = await self._request("POST", "/certificates", json=payload.model_dump(mode="json"))
        try:
            certificate = CertificateSessionData.model_validate(
                {
                    "certificate_id": body.get("certificate_id"),
                    "download_url": body.get("download_url"),
                    "storage_uri": body.get("storage_uri"),
                    "expires_at": body.get("expires_at"),
                    "metadata": body.get("metadata"),
                }
            )
        except PydanticValidationError as e:
            raise CollaboratorResponseError(
                self.service_name,
                "Certificate response is missing required fields",
                details={"invalid_fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
                suggestion="Please try generating the certificate again.",
            ) from e

        logger.info(
            "certificate_generated",
            session_id=payload.session_id,
            certificate_id=certificate.certificate_id,
            file_size=certificate.metadata.file_size,
        )
        return certificate

    async def generate_documents(self, payload: Payload) -> List[GeneratedDocument]:
        """Generate the formation documents that accompany a filing."""
        body = await self._request("POST", "/documents", json=payload.model_dump(mode="json"))
        try:
            documents = [GeneratedDocument.model_validate(d) for d in body.get("documents") or []]
        except PydanticValidationError as e:
            raise CollaboratorResponseError(
                self.service_name,
                "Document response is malformed",
                details={"invalid_fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
            ) from e
        if not documents:
            raise CollaboratorResponseError(self.service_name, "No documents were generated")

        logger.info("documents_generated", session_id=payload.session_id, count=len(documents))
        return documents
