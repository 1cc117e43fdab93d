"""
LLM Routing Rules API Router

  GET    /llm-routes          all rules (active and inactive), by priority
  POST   /llm-routes          create → 201
  PATCH  /llm-routes/{id}     partial update
  DELETE /llm-routes/{id}     204

Rules are read by the orchestrator at the routing stage of every run, so
changes apply to the next run without a restart. The provider name is
validated against the registered providers (enum value, model id or alias).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Response, status

from app.api.dependencies import Store
from app.llm.router import resolve_provider
from app.schemas.documents import (
    ErrorDetail,
    ErrorResponse,
    ProcessingErrors,
    RoutingRule,
    RoutingRuleCreate,
    RoutingRuleListResponse,
    RoutingRuleUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/llm-routes",
    tags=["LLM Routing"],
)


def _check_provider(name: str | None) -> None:
    if name is None or resolve_provider(name) is not None:
        return
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ErrorResponse(
            error_code="UNKNOWN_PROVIDER",
            message=f"LLM provider '{name}' is not supported.",
            details=[
                ErrorDetail(
                    field="llmProvider",
                    message="Use one of: anthropic, openai, gemini, llama.",
                    code="UNKNOWN_PROVIDER",
                )
            ],
        ).model_dump(),
    )


def _not_found(rule_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=ProcessingErrors.routing_rule_not_found(rule_id).model_dump(),
    )


@router.get(
    "",
    response_model=RoutingRuleListResponse,
    response_model_by_alias=True,
)
async def list_routes(store: Store) -> RoutingRuleListResponse:
    return RoutingRuleListResponse(routes=await store.list_routing_rules(active_only=False))


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=RoutingRule,
    response_model_by_alias=True,
    responses={422: {"model": ErrorResponse}},
)
async def create_route(body: RoutingRuleCreate, store: Store) -> RoutingRule:
    _check_provider(body.llm_provider)
    rule = await store.create_routing_rule(body)
    logger.info(
        "Routing rule created | id=%d condition=%r provider=%s priority=%d",
        rule.id, rule.condition, rule.llm_provider, rule.priority,
    )
    return rule


@router.patch(
    "/{rule_id}",
    response_model=RoutingRule,
    response_model_by_alias=True,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def update_route(rule_id: int, body: RoutingRuleUpdate, store: Store) -> RoutingRule:
    _check_provider(body.llm_provider)
    rule = await store.update_routing_rule(rule_id, body)
    if rule is None:
        raise _not_found(rule_id)
    logger.info("Routing rule updated | id=%d active=%s", rule.id, rule.is_active)
    return rule


@router.delete(
    "/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_route(rule_id: int, store: Store) -> Response:
    if not await store.delete_routing_rule(rule_id):
        raise _not_found(rule_id)
    logger.info("Routing rule deleted | id=%d", rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
