"""
FastAPI backend for mailhub.
Exposes the email tools over HTTP plus REST conveniences for accounts,
search and the urgent/important scan.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Dict, Any, Optional, Literal

from fastapi import FastAPI, HTTPException, Query, Body, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings, load_settings, configure_logging
from .email.errors import (
    MailhubError, ValidationError, ConflictError, NotFoundError, ProviderError, NoAccountsError
)
from .tools import EmailToolHandlers, TOOL_DEFINITIONS, ACCOUNT_PARAMS, build_tool_handlers

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (NoAccountsError, 404),
    (ConflictError, 409),
    (ProviderError, 502),
)

# snake_case body field -> camelCase tool parameter
BODY_PARAMS = {field: param for param, field in ACCOUNT_PARAMS.items()}


# ============ Pydantic Models ============

class AccountCreate(BaseModel):
    account_name: str
    email: str
    provider: Literal['gmail', 'imap']
    # Gmail credentials
    refresh_token: Optional[str] = None
    access_token: Optional[str] = None
    expires_at: Optional[float] = None
    # IMAP credentials
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = True
    # Common
    default_mailbox: Optional[str] = None
    custom_urgent_keywords: Optional[List[str]] = None
    custom_important_keywords: Optional[List[str]] = None


class AccountUpdate(BaseModel):
    account_name: Optional[str] = None
    email: Optional[str] = None
    refresh_token: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    tls: Optional[bool] = None
    default_mailbox: Optional[str] = None
    custom_urgent_keywords: Optional[List[str]] = None
    custom_important_keywords: Optional[List[str]] = None


class SearchBody(BaseModel):
    query: str
    account_ids: Optional[List[int]] = None
    mailboxes: Optional[List[str]] = None
    max_results: Optional[int] = None
    min_urgency_score: Optional[float] = None
    min_importance_score: Optional[float] = None


def _account_params(model: BaseModel) -> Dict[str, Any]:
    return {BODY_PARAMS[k]: v for k, v in model.model_dump(exclude_none=True).items() if k in BODY_PARAMS}


def _tools(request: Request) -> EmailToolHandlers:
    tools = getattr(request.app.state, 'tools', None)
    if tools is None:
        raise HTTPException(status_code=503, detail="Email service not initialized")
    return tools


def create_app(settings: Optional[Settings] = None, tools: Optional[EmailToolHandlers] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (loaded from config.ini/.env at startup if omitted)
        tools: Pre-built tool handlers, mainly for tests
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        if app.state.tools is None:
            app.state.settings = app.state.settings or load_settings()
            configure_logging(app.state.settings.log_level)
            logger.info("Starting mailhub API...")
            app.state.tools = build_tool_handlers(app.state.settings)
            logger.info(f"Email storage at {app.state.settings.db_path}")
        yield
        logger.info("Shutting down mailhub API...")

    app = FastAPI(
        title="mailhub API",
        description="Search and triage email across Gmail and IMAP accounts",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.tools = tools

    @app.exception_handler(MailhubError)
    async def mailhub_error_handler(request: Request, exc: MailhubError):
        status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": str(exc), "error_type": type(exc).__name__}
        )

    # ============ Health / Tools ============

    @app.get("/api/health")
    async def health(request: Request):
        """Service health and account counts."""
        tools = _tools(request)
        return {
            "status": "healthy",
            "accounts": tools.registry.count(),
            "active_accounts": tools.registry.count(active_only=True),
        }

    @app.get("/api/tools")
    async def list_tools():
        """List tool definitions."""
        return {"success": True, "tools": TOOL_DEFINITIONS}

    @app.post("/api/tools/{name}")
    async def call_tool(name: str, request: Request, params: Dict[str, Any] = Body(default={})):
        """Invoke a tool with camelCase JSON parameters."""
        return await _tools(request).call(name, params)

    # ============ Email Account Endpoints ============

    @app.get("/api/email/accounts")
    async def list_accounts(request: Request, include_inactive: bool = Query(False)):
        """List email accounts (credentials never included)."""
        return await _tools(request).list_email_accounts({"includeInactive": include_inactive})

    @app.post("/api/email/accounts")
    async def add_account(request: Request, account: AccountCreate):
        """Add a new email account."""
        return await _tools(request).add_email_account(_account_params(account))

    @app.put("/api/email/accounts/{account_id}")
    async def update_account(request: Request, account_id: int, account: AccountUpdate):
        """Update an account; omitted fields keep their values."""
        params = _account_params(account)
        params["accountId"] = account_id
        return await _tools(request).update_email_account(params)

    @app.delete("/api/email/accounts/{account_id}")
    async def delete_account(request: Request, account_id: int):
        """Delete an account and its cached results."""
        return await _tools(request).remove_email_account({"accountId": account_id})

    @app.post("/api/email/accounts/{account_id}/enable")
    async def enable_account(request: Request, account_id: int):
        return await _tools(request).enable_email_account({"accountId": account_id})

    @app.post("/api/email/accounts/{account_id}/disable")
    async def disable_account(request: Request, account_id: int):
        return await _tools(request).disable_email_account({"accountId": account_id})

    @app.post("/api/email/accounts/{account_id}/test")
    async def test_account(request: Request, account_id: int):
        """Check connectivity with the stored credentials."""
        return await _tools(request).test_email_account({"accountId": account_id})

    @app.get("/api/email/accounts/{account_id}/mailboxes")
    async def list_mailboxes(request: Request, account_id: int):
        return await _tools(request).list_email_mailboxes({"accountId": account_id})

    # ============ Search Endpoints ============

    @app.post("/api/email/search")
    async def search(request: Request, body: SearchBody):
        """Search across accounts and return ranked, classified results."""
        params: Dict[str, Any] = {"query": body.query}
        if body.account_ids is not None:
            params["accountIds"] = body.account_ids
        if body.mailboxes is not None:
            params["mailboxes"] = body.mailboxes
        if body.max_results is not None:
            params["maxResults"] = body.max_results
        if body.min_urgency_score is not None:
            params["minUrgencyScore"] = body.min_urgency_score
        if body.min_importance_score is not None:
            params["minImportanceScore"] = body.min_importance_score
        return await _tools(request).search_emails(params)

    @app.get("/api/email/urgent")
    async def urgent(
        request: Request,
        max_results: Optional[int] = Query(None),
        only_unread: bool = Query(False),
        account_ids: Optional[List[int]] = Query(None)
    ):
        """Urgent and important mail across accounts."""
        params: Dict[str, Any] = {"onlyUnread": only_unread}
        if max_results is not None:
            params["maxResults"] = max_results
        if account_ids:
            params["accountIds"] = account_ids
        return await _tools(request).get_urgent_emails(params)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
