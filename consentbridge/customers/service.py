"""Customer Records - PII sealed at rest

Each PII field is stored as an EncryptedField; phone/email/pan also keep a
digest so a record can be found without decrypting the table.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

import structlog

from consentbridge.errors import DecryptionError, NotFoundError, ValidationError
from consentbridge.governance.audit_chain import AuditChain
from consentbridge.models import PII_FIELDS, SEARCHABLE_FIELDS, Actor, Customer, utcnow
from consentbridge.security.field_encryption import FieldEncryptionEngine
from consentbridge.storage.repository import Repository

logger = structlog.get_logger()


class CustomerService:
    def __init__(
        self,
        repository: Repository,
        field_engine: FieldEncryptionEngine,
        audit_chain: AuditChain,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.field_engine = field_engine
        self.audit_chain = audit_chain
        self.clock = clock

    def _hashes(self, values: Dict[str, Optional[str]]) -> Dict[str, str]:
        return {
            f"{name}_hash": self.field_engine.create_hash(values[name])
            for name in SEARCHABLE_FIELDS
            if values.get(name) is not None
        }

    def create_customer(self, values: Dict[str, Optional[str]], actor: Actor) -> Customer:
        """Encrypt and store a new customer

        Raises:
            ValidationError: name missing or another customer has the same email/phone/pan
        """
        if not values.get("name"):
            raise ValidationError("Customer name is required")
        hashes = self._hashes(values)
        for name in SEARCHABLE_FIELDS:
            digest = hashes.get(f"{name}_hash")
            if digest and self.repository.find_customer_by_hash(name, digest):
                raise ValidationError(f"A customer with this {name} already exists")

        now = self.clock()
        customer = Customer(
            customer_id=str(uuid4()),
            encrypted_fields=self.field_engine.encrypt_record(values),
            created_at=now,
            updated_at=now,
            **hashes,
        )
        self.repository.create_customer(customer)

        self.audit_chain.record(
            "customer_created",
            actor.actor_type,
            actor.actor_id,
            customer_id=customer.customer_id,
            action_details={"fields": sorted(customer.encrypted_fields)},
        )
        logger.info("Customer created", customer_id=customer.customer_id)
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        customer = self.repository.get_customer(customer_id)
        if not customer:
            raise NotFoundError("Customer not found")
        return customer

    def list_customers(self) -> List[Customer]:
        return self.repository.list_customers()

    def find_by_field(self, field: str, value: str) -> Customer:
        if field not in SEARCHABLE_FIELDS:
            raise ValidationError(f"Search is only supported on {', '.join(SEARCHABLE_FIELDS)}")
        customer = self.repository.find_customer_by_hash(field, self.field_engine.create_hash(value))
        if not customer:
            raise NotFoundError("Customer not found")
        return customer

    def update_customer(self, customer_id: str, values: Dict[str, Optional[str]], actor: Actor) -> Customer:
        """Re-encrypt changed fields; each EncryptedField is replaced wholesale"""
        customer = self.get_customer(customer_id)
        changed = {k: v for k, v in values.items() if k in PII_FIELDS and v is not None}
        if not changed:
            raise ValidationError("No customer fields to update")

        encrypted = dict(customer.encrypted_fields)
        encrypted.update(self.field_engine.encrypt_record(changed))
        customer = customer.model_copy(update={
            "encrypted_fields": encrypted,
            "updated_at": self.clock(),
            **self._hashes(changed),
        })
        self.repository.save_customer(customer)

        self.audit_chain.record(
            "customer_updated",
            actor.actor_type,
            actor.actor_id,
            customer_id=customer_id,
            action_details={"updatedFields": sorted(changed)},
        )
        logger.info("Customer updated", customer_id=customer_id, fields=len(changed))
        return customer

    def delete_customer(self, customer_id: str, actor: Actor):
        if not self.repository.delete_customer(customer_id):
            raise NotFoundError("Customer not found")
        self.audit_chain.record(
            "customer_deleted",
            actor.actor_type,
            actor.actor_id,
            customer_id=customer_id,
        )
        logger.info("Customer deleted", customer_id=customer_id)

    def decrypted_view(self, customer: Customer) -> Dict:
        """Customer with PII opened; fields that fail to decrypt are omitted"""
        view: Dict = {
            "customerId": customer.customer_id,
            "isActive": customer.is_active,
            "createdAt": customer.created_at.isoformat(),
            "updatedAt": customer.updated_at.isoformat(),
        }
        for name, field in customer.encrypted_fields.items():
            try:
                view[name] = self.field_engine.decrypt_field(field, stage=f"field:{name}")
            except DecryptionError as e:
                logger.error(
                    "Customer field decryption failed",
                    customer_id=customer.customer_id,
                    stage=e.stage,
                )
        return view
