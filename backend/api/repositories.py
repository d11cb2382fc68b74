"""
LayerLens Repositories API

PROVIDES:
- GET /api/repositories/list: repositories visible to the caller, sorted by name
- DELETE /api/repositories/{repository}: delete a repository (ADMIN only)

Registry credentials come from optional HTTP Basic auth on the request;
without them the configured default identity is used.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from registry.auth import RegistryCredentials
from registry.client import RegistryClient
from registry.client_factory import ClientFactory
from registry.errors import AuthenticationError, CacheUnavailableError, NotFoundError, RegistryError
from registry.models import Permissions, Repository

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/repositories", tags=["repositories"])

basic_auth = HTTPBasic(auto_error=False)


def get_client_factory(request: Request) -> ClientFactory:
    return request.app.state.client_factory


def get_registry_client(
    factory: ClientFactory = Depends(get_client_factory),
    basic: Optional[HTTPBasicCredentials] = Depends(basic_auth),
) -> RegistryClient:
    """Registry client acting as the caller"""
    credentials = None
    if basic is not None:
        credentials = RegistryCredentials(
            registry=factory.settings.REGISTRY_HOST,
            username=basic.username,
            password=basic.password,
        )
    return factory.get_client(credentials)


def raise_http_error(e: RegistryError):
    """Map a registry error to its HTTP status"""
    if isinstance(e, CacheUnavailableError):
        raise HTTPException(status_code=503, detail="Cannot access cache") from e
    if isinstance(e, AuthenticationError):
        raise HTTPException(status_code=401, detail="Registry rejected the credentials") from e
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e
    raise HTTPException(status_code=405, detail=str(e)) from e


@router.get("/list", response_model=List[Repository])
async def list_repositories(client: RegistryClient = Depends(get_registry_client)):
    """
    List repositories with tag counts and the caller's permissions.

    Repositories without tags are omitted.
    """
    try:
        repositories = await client.list_repositories()
    except RegistryError as e:
        raise_http_error(e)

    return sorted(repositories, key=lambda r: r.name)


@router.delete("/{repository:path}")
async def delete_repository(repository: str, client: RegistryClient = Depends(get_registry_client)):
    """
    Delete a repository.

    SECURITY: Requires ADMIN permission on the repository
    """
    try:
        permissions = await client.get_permissions(repository)
        if permissions != Permissions.ADMIN:
            raise HTTPException(status_code=401, detail="Deleting a repository requires admin permission")

        await client.delete_repository(repository)
    except RegistryError as e:
        raise_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.info(f"Repository {repository} deleted")
    return {"success": True}
