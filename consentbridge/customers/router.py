"""Customer Router - Admin CRUD over encrypted customer records

Endpoints:
- GET /customers: List customers (decrypted view)
- POST /customers: Create customer
- GET /customers/search?field=&value=: Find by phone/email/pan digest
- GET /customers/me: Calling customer's own record
- GET /customers/{customer_id}: Get customer
- PUT /customers/{customer_id}: Update customer fields
- DELETE /customers/{customer_id}: Delete customer
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from consentbridge.container import ServiceContainer, get_container
from consentbridge.errors import NotFoundError
from consentbridge.governance.auth import check_role
from consentbridge.models import Actor

router = APIRouter()
logger = structlog.get_logger()


class CustomerFields(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    pan: Optional[str] = None
    address: Optional[str] = None


@router.get("")
async def list_customers(
    user: Actor = Depends(check_role("customers")),
    container: ServiceContainer = Depends(get_container),
):
    service = container.customer_service
    customers = [service.decrypted_view(c) for c in service.list_customers()]
    return {"status": "success", "count": len(customers), "data": customers}


@router.post("", status_code=201)
async def create_customer(
    request: CustomerFields,
    user: Actor = Depends(check_role("customers")),
    container: ServiceContainer = Depends(get_container),
):
    service = container.customer_service
    customer = service.create_customer(request.model_dump(), user)
    return {"status": "success", "data": service.decrypted_view(customer)}


@router.get("/search")
async def search_customer(
    field: str,
    value: str,
    user: Actor = Depends(check_role("customers")),
    container: ServiceContainer = Depends(get_container),
):
    service = container.customer_service
    customer = service.find_by_field(field, value)
    return {"status": "success", "data": service.decrypted_view(customer)}


@router.get("/me")
async def get_my_profile(
    user: Actor = Depends(check_role("customer_self")),
    container: ServiceContainer = Depends(get_container),
):
    """The calling customer's own record, decrypted"""
    if not user.customer_id:
        raise NotFoundError("Customer not found")
    service = container.customer_service
    return {"status": "success", "data": service.decrypted_view(service.get_customer(user.customer_id))}


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    user: Actor = Depends(check_role("customers")),
    container: ServiceContainer = Depends(get_container),
):
    service = container.customer_service
    return {"status": "success", "data": service.decrypted_view(service.get_customer(customer_id))}


@router.put("/{customer_id}")
async def update_customer(
    customer_id: str,
    request: CustomerFields,
    user: Actor = Depends(check_role("customers")),
    container: ServiceContainer = Depends(get_container),
):
    service = container.customer_service
    customer = service.update_customer(customer_id, request.model_dump(), user)
    return {"status": "success", "data": service.decrypted_view(customer)}


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: str,
    user: Actor = Depends(check_role("customers")),
    container: ServiceContainer = Depends(get_container),
):
    container.customer_service.delete_customer(customer_id, user)
    return {"status": "success", "message": "Customer deleted"}
