from __future__ import annotations

import hmac
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlmodel import Session

from . import credentials, devices, service
from .config import settings
from .database import get_session
from .errors import (
    ConflictError,
    NotFoundError,
    ProvisioningError,
    StorageError,
    ValidationError,
)
from .models import AclPermission
from .sync import BrokerSync, SyncState, build_syncer, current_state


def require_bearer(authorization: Optional[str] = Header(default=None)) -> None:
    """Reject requests without the configured ``API_BEARER`` token."""

    if not settings.API_BEARER:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if not hmac.compare_digest(token, settings.API_BEARER):
        raise HTTPException(status_code=403, detail="Invalid bearer token")


router = APIRouter(
    prefix="/api/mqtt",
    tags=["mqtt"],
    dependencies=[Depends(require_bearer)],
)


_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except ProvisioningError as exc:
        for error_type, status_code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                raise HTTPException(status_code, exc.message) from exc
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.message) from exc


def get_syncer() -> BrokerSync:
    with _http_errors():
        return build_syncer()


# ---------------------------------------------------------------------------
# Payloads


class CredentialCreateRequest(BaseModel):
    """Payload for provisioning a device on the broker."""

    device_id: str = Field(..., min_length=1, max_length=64)
    mqtt_username: Optional[str] = Field(default=None, max_length=128)
    mqtt_password: Optional[str] = Field(default=None, max_length=255)
    auto_generate: bool = False

    @field_validator("device_id")
    @classmethod
    def _clean_device_id(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("device_id cannot be empty")
        return cleaned


class CredentialUpdateRequest(BaseModel):
    regenerate_password: bool = False
    enabled: Optional[bool] = None


class CredentialResponse(BaseModel):
    """Broker credential without any password material."""

    id: int
    device_id: str
    mqtt_username: str
    enabled: bool
    device_name: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IssuedCredentialResponse(CredentialResponse):
    """Credential plus the plaintext password, returned exactly once."""

    mqtt_password: Optional[str] = None


class AclRuleCreateRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    topic_pattern: str = Field(..., min_length=1, max_length=255)
    permission: str = Field(default=AclPermission.READWRITE.value)


class AclRuleUpdateRequest(BaseModel):
    topic_pattern: Optional[str] = Field(default=None, min_length=1, max_length=255)
    permission: Optional[str] = None


class AclRuleResponse(BaseModel):
    id: int
    device_id: str
    topic_pattern: str
    permission: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SyncStatusResponse(BaseModel):
    pending_changes: int
    last_sync_at: Optional[datetime] = None
    last_sync_status: str
    sync_state: str = SyncState.IDLE.value

    model_config = ConfigDict(from_attributes=True)


class SyncResultResponse(BaseModel):
    success: bool
    message: str
    reloaded: bool


def _credential_response(
    session: Session, credential, *, password: Optional[str] = None
) -> IssuedCredentialResponse:
    device = devices.get_device(session, credential.device_id)
    response = IssuedCredentialResponse.model_validate(credential)
    response.device_name = device.name if device is not None else None
    response.owner_id = device.owner_id if device is not None else None
    response.mqtt_password = password
    return response


# ---------------------------------------------------------------------------
# Credentials


@router.get("/credentials", response_model=List[CredentialResponse])
def list_credentials(
    owner_id: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> List[CredentialResponse]:
    with _http_errors():
        summaries = service.list_credentials(session, owner_id=owner_id)
    return [CredentialResponse.model_validate(summary) for summary in summaries]


@router.post(
    "/credentials",
    status_code=status.HTTP_201_CREATED,
    response_model=IssuedCredentialResponse,
)
def create_credential(
    payload: CredentialCreateRequest,
    session: Session = Depends(get_session),
) -> IssuedCredentialResponse:
    with _http_errors():
        issued = service.create_credential(
            session,
            payload.device_id,
            username=payload.mqtt_username,
            password=payload.mqtt_password,
            auto_generate=payload.auto_generate,
        )
        return _credential_response(
            session, issued.credential, password=issued.plaintext_password
        )


@router.get("/credentials/{device_id}", response_model=CredentialResponse)
def get_credential(
    device_id: str,
    session: Session = Depends(get_session),
) -> CredentialResponse:
    with _http_errors():
        credential = credentials.find_by_device_id(session, device_id)
        if credential is None:
            raise NotFoundError("Credentials not found")
        return _credential_response(session, credential)


@router.patch("/credentials/{device_id}", response_model=IssuedCredentialResponse)
def update_credential(
    device_id: str,
    payload: CredentialUpdateRequest,
    session: Session = Depends(get_session),
) -> IssuedCredentialResponse:
    with _http_errors():
        credential = credentials.find_by_device_id(session, device_id)
        if credential is None:
            raise NotFoundError("Credentials not found")

        password: Optional[str] = None
        if payload.enabled is not None:
            credential = service.set_enabled(session, device_id, payload.enabled)
        if payload.regenerate_password:
            issued = service.regenerate_password(session, device_id)
            credential = issued.credential
            password = issued.plaintext_password
        return _credential_response(session, credential, password=password)


@router.delete(
    "/credentials/{device_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_model=None,
    response_class=Response,
)
def delete_credential(
    device_id: str,
    session: Session = Depends(get_session),
) -> Response:
    with _http_errors():
        deleted = service.delete_credential(session, device_id)
    if not deleted:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Credentials not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Access rules


@router.get("/acl", response_model=List[AclRuleResponse])
def list_rules(
    device_id: str = Query(..., min_length=1),
    session: Session = Depends(get_session),
) -> List[AclRuleResponse]:
    with _http_errors():
        rules = service.list_rules(session, device_id)
    return [AclRuleResponse.model_validate(rule) for rule in rules]


@router.post(
    "/acl",
    status_code=status.HTTP_201_CREATED,
    response_model=AclRuleResponse,
)
def create_rule(
    payload: AclRuleCreateRequest,
    session: Session = Depends(get_session),
) -> AclRuleResponse:
    with _http_errors():
        rule = service.add_rule(
            session, payload.device_id, payload.topic_pattern, payload.permission
        )
    return AclRuleResponse.model_validate(rule)


@router.patch("/acl/{rule_id}", response_model=AclRuleResponse)
def update_rule(
    rule_id: int,
    payload: AclRuleUpdateRequest,
    session: Session = Depends(get_session),
) -> AclRuleResponse:
    with _http_errors():
        rule = service.update_rule(
            session,
            rule_id,
            topic_pattern=payload.topic_pattern,
            permission=payload.permission,
        )
    return AclRuleResponse.model_validate(rule)


@router.delete(
    "/acl/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_model=None,
    response_class=Response,
)
def delete_rule(
    rule_id: int,
    session: Session = Depends(get_session),
) -> Response:
    with _http_errors():
        deleted = service.delete_rule(session, rule_id)
    if not deleted:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "ACL rule not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Sync


@router.get("/sync", response_model=SyncStatusResponse)
def get_sync_status(session: Session = Depends(get_session)) -> SyncStatusResponse:
    with _http_errors():
        current = service.get_sync_status(session)
        response = SyncStatusResponse.model_validate(current)
    response.sync_state = current_state().value
    return response


@router.post("/sync", response_model=SyncResultResponse)
def trigger_sync(
    response: Response,
    session: Session = Depends(get_session),
    syncer: BrokerSync = Depends(get_syncer),
) -> SyncResultResponse:
    with _http_errors():
        result = service.trigger_sync(session, syncer=syncer)
    if not result.success:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return SyncResultResponse(**result.as_dict())


__all__ = ["get_syncer", "require_bearer", "router"]
