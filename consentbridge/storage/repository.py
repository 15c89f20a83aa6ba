"""Repository - Id-keyed persistence for the domain models

Self-Explanatory: CRUD for customers, partners, consents and data requests.
How: One short connection per call, raw SQL via text(), rows mapped to
pydantic models. JSON columns round-trip through json.dumps/loads.
"""

import json
from datetime import datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine

from consentbridge.models import (
    Consent,
    ConsentStatus,
    Contract,
    Customer,
    DataRequest,
    DataRequestStatus,
    EncryptedField,
    Partner,
)

logger = structlog.get_logger()


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _contract_json(contract: Optional[Contract]) -> Optional[str]:
    return json.dumps(contract.model_dump()) if contract else None


def _contract_from_json(raw: Optional[str]) -> Optional[Contract]:
    return Contract(**json.loads(raw)) if raw else None


class Repository:
    """Persistence for everything except the audit chain"""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def _customer_params(self, customer: Customer) -> Dict:
        return {
            "id": customer.customer_id,
            "fields": json.dumps(
                {name: field.to_record() for name, field in customer.encrypted_fields.items()}
            ),
            "phone_hash": customer.phone_hash,
            "email_hash": customer.email_hash,
            "pan_hash": customer.pan_hash,
            "active": customer.is_active,
            "created": _ts(customer.created_at),
            "updated": _ts(customer.updated_at),
        }

    @staticmethod
    def _row_to_customer(row) -> Customer:
        data = dict(row._mapping)
        records = json.loads(data.pop("encrypted_fields"))
        return Customer(
            encrypted_fields={
                name: EncryptedField.from_record(record) for name, record in records.items()
            },
            **data,
        )

    def create_customer(self, customer: Customer) -> Customer:
        with self.engine.connect() as conn:
            conn.execute(text("""
                INSERT INTO customers
                (customer_id, encrypted_fields, phone_hash, email_hash, pan_hash,
                 is_active, created_at, updated_at)
                VALUES (:id, :fields, :phone_hash, :email_hash, :pan_hash,
                        :active, :created, :updated)
            """), self._customer_params(customer))
            conn.commit()
        return customer

    def save_customer(self, customer: Customer) -> Customer:
        with self.engine.connect() as conn:
            conn.execute(text("""
                UPDATE customers
                SET encrypted_fields = :fields,
                    phone_hash = :phone_hash,
                    email_hash = :email_hash,
                    pan_hash = :pan_hash,
                    is_active = :active,
                    updated_at = :updated
                WHERE customer_id = :id
            """), self._customer_params(customer))
            conn.commit()
        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        with self.engine.connect() as conn:
            row = conn.execute(text("""
                SELECT * FROM customers WHERE customer_id = :id
            """), {"id": customer_id}).fetchone()
        return self._row_to_customer(row) if row else None

    def find_customer_by_hash(self, field: str, digest: str) -> Optional[Customer]:
        column = {"phone": "phone_hash", "email": "email_hash", "pan": "pan_hash"}[field]
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT * FROM customers WHERE {column} = :digest"),
                {"digest": digest},
            ).fetchone()
        return self._row_to_customer(row) if row else None

    def list_customers(self) -> List[Customer]:
        with self.engine.connect() as conn:
            rows = conn.execute(text("""
                SELECT * FROM customers ORDER BY created_at DESC
            """)).fetchall()
        return [self._row_to_customer(row) for row in rows]

    def delete_customer(self, customer_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(text("""
                DELETE FROM customers WHERE customer_id = :id
            """), {"id": customer_id})
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Partners
    # ------------------------------------------------------------------

    def _partner_params(self, partner: Partner) -> Dict:
        return {
            "id": partner.partner_id,
            "name": partner.partner_name,
            "public_key": partner.public_key,
            "token_hash": partner.api_token_hash,
            "callback_url": partner.callback_url,
            "status": partner.status.value,
            "requested": _contract_json(partner.requested_contract),
            "approved": partner.approved_contract,
            "contract_data": _contract_json(partner.contract_data),
            "version": partner.contract_version,
            "approved_at": _ts(partner.contract_approved_at),
            "approved_by": partner.contract_approved_by,
            "created": _ts(partner.created_at),
            "updated": _ts(partner.updated_at),
        }

    @staticmethod
    def _row_to_partner(row) -> Partner:
        data = dict(row._mapping)
        data["requested_contract"] = _contract_from_json(data["requested_contract"])
        data["contract_data"] = _contract_from_json(data["contract_data"])
        return Partner(**data)

    def create_partner(self, partner: Partner) -> Partner:
        with self.engine.connect() as conn:
            conn.execute(text("""
                INSERT INTO partners
                (partner_id, partner_name, public_key, api_token_hash, callback_url,
                 status, requested_contract, approved_contract, contract_data,
                 contract_version, contract_approved_at, contract_approved_by,
                 created_at, updated_at)
                VALUES (:id, :name, :public_key, :token_hash, :callback_url,
                        :status, :requested, :approved, :contract_data,
                        :version, :approved_at, :approved_by, :created, :updated)
            """), self._partner_params(partner))
            conn.commit()
        return partner

    def save_partner(self, partner: Partner) -> Partner:
        with self.engine.connect() as conn:
            conn.execute(text("""
                UPDATE partners
                SET partner_name = :name,
                    public_key = :public_key,
                    api_token_hash = :token_hash,
                    callback_url = :callback_url,
                    status = :status,
                    requested_contract = :requested,
                    approved_contract = :approved,
                    contract_data = :contract_data,
                    contract_version = :version,
                    contract_approved_at = :approved_at,
                    contract_approved_by = :approved_by,
                    updated_at = :updated
                WHERE partner_id = :id
            """), self._partner_params(partner))
            conn.commit()
        return partner

    def get_partner(self, partner_id: str) -> Optional[Partner]:
        with self.engine.connect() as conn:
            row = conn.execute(text("""
                SELECT * FROM partners WHERE partner_id = :id
            """), {"id": partner_id}).fetchone()
        return self._row_to_partner(row) if row else None

    def list_partners(
        self,
        approved: Optional[bool] = None,
        status: Optional[str] = None,
    ) -> List[Partner]:
        query = "SELECT * FROM partners WHERE 1 = 1"
        params: Dict = {}
        if approved is not None:
            query += " AND approved_contract = :approved"
            params["approved"] = approved
        if status:
            query += " AND status = :status"
            params["status"] = status
        query += " ORDER BY created_at DESC"
        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).fetchall()
        return [self._row_to_partner(row) for row in rows]

    # ------------------------------------------------------------------
    # Consents
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_consent(row) -> Consent:
        data = dict(row._mapping)
        data["allowed_fields"] = json.loads(data["allowed_fields"])
        return Consent(**data)

    def create_consent(self, consent: Consent) -> Consent:
        with self.engine.connect() as conn:
            conn.execute(text("""
                INSERT INTO consents
                (consent_id, customer_id, partner_id, allowed_fields, purpose,
                 retention_period_days, legal_basis, contract_text, contract_id,
                 status, consent_duration_ms, consent_method, device_fingerprint,
                 ip_address_hash, withdrawal_method, created_at, updated_at, expires_at)
                VALUES (:id, :customer, :partner, :fields, :purpose,
                        :retention, :legal_basis, :contract_text, :contract_id,
                        :status, :duration, :method, :fingerprint,
                        :ip_hash, :withdrawal, :created, :updated, :expires)
            """), {
                "id": consent.consent_id,
                "customer": consent.customer_id,
                "partner": consent.partner_id,
                "fields": json.dumps(consent.allowed_fields),
                "purpose": consent.purpose,
                "retention": consent.retention_period_days,
                "legal_basis": consent.legal_basis,
                "contract_text": consent.contract_text,
                "contract_id": consent.contract_id,
                "status": consent.status.value,
                "duration": consent.consent_duration_ms,
                "method": consent.consent_method,
                "fingerprint": consent.device_fingerprint,
                "ip_hash": consent.ip_address_hash,
                "withdrawal": consent.withdrawal_method,
                "created": _ts(consent.created_at),
                "updated": _ts(consent.updated_at),
                "expires": _ts(consent.expires_at),
            })
            conn.commit()
        return consent

    def get_consent(self, consent_id: str) -> Optional[Consent]:
        with self.engine.connect() as conn:
            row = conn.execute(text("""
                SELECT * FROM consents WHERE consent_id = :id
            """), {"id": consent_id}).fetchone()
        return self._row_to_consent(row) if row else None

    def update_consent_status(
        self,
        consent_id: str,
        status: ConsentStatus,
        updated_at: datetime,
        expected_status: Optional[ConsentStatus] = None,
    ) -> bool:
        """Set status; with `expected_status` only if it still matches

        Returns:
            True if a row changed
        """
        query = """
            UPDATE consents SET status = :status, updated_at = :updated
            WHERE consent_id = :id
        """
        params = {"status": status.value, "updated": _ts(updated_at), "id": consent_id}
        if expected_status is not None:
            query += " AND status = :expected"
            params["expected"] = expected_status.value
        with self.engine.connect() as conn:
            result = conn.execute(text(query), params)
            conn.commit()
        return result.rowcount > 0

    def list_consents(
        self,
        customer_id: Optional[str] = None,
        partner_id: Optional[str] = None,
        status: Optional[ConsentStatus] = None,
    ) -> List[Consent]:
        query = "SELECT * FROM consents WHERE 1 = 1"
        params: Dict = {}
        if customer_id:
            query += " AND customer_id = :customer"
            params["customer"] = customer_id
        if partner_id:
            query += " AND partner_id = :partner"
            params["partner"] = partner_id
        if status:
            query += " AND status = :status"
            params["status"] = status.value
        query += " ORDER BY created_at DESC"
        with self.engine.connect() as conn:
            rows = conn.execute(text(query), params).fetchall()
        return [self._row_to_consent(row) for row in rows]

    # ------------------------------------------------------------------
    # Data requests
    # ------------------------------------------------------------------

    def create_data_request(self, request: DataRequest) -> DataRequest:
        with self.engine.connect() as conn:
            conn.execute(text("""
                INSERT INTO data_requests
                (request_id, consent_id, partner_id, customer_id, requested_fields,
                 request_signature, status, created_at, processed_at, expires_at)
                VALUES (:id, :consent, :partner, :customer, :fields,
                        :signature, :status, :created, :processed, :expires)
            """), {
                "id": request.request_id,
                "consent": request.consent_id,
                "partner": request.partner_id,
                "customer": request.customer_id,
                "fields": json.dumps(request.requested_fields),
                "signature": request.request_signature,
                "status": request.status.value,
                "created": _ts(request.created_at),
                "processed": _ts(request.processed_at),
                "expires": _ts(request.expires_at),
            })
            conn.commit()
        return request

    def update_data_request_status(
        self, request_id: str, status: DataRequestStatus, processed_at: Optional[datetime] = None
    ):
        with self.engine.connect() as conn:
            conn.execute(text("""
                UPDATE data_requests
                SET status = :status, processed_at = :processed
                WHERE request_id = :id
            """), {"status": status.value, "processed": _ts(processed_at), "id": request_id})
            conn.commit()

    def get_data_request(self, request_id: str) -> Optional[DataRequest]:
        with self.engine.connect() as conn:
            row = conn.execute(text("""
                SELECT * FROM data_requests WHERE request_id = :id
            """), {"id": request_id}).fetchone()
        if not row:
            return None
        data = dict(row._mapping)
        data["requested_fields"] = json.loads(data["requested_fields"])
        return DataRequest(**data)
