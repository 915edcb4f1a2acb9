from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, Response, status

from .models import (
    CheckpointFireView,
    HealthResponse,
    ReminderJobResponse,
    ReminderRunDetailResponse,
    ReminderTriggerRequest,
    RunOutcomeResponse,
    SubscriptionCreateRequest,
    SubscriptionCreateResponse,
    SubscriptionRecord,
    SubscriptionUpdateRequest,
)
from .runtime import ReminderRuntime
from .scheduler import RunOutcome
from .store import SubscriptionNotFoundError
from .trigger import TriggerNotConfiguredError, TriggerRequestError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subscriptions"])


def _runtime(request: Request) -> ReminderRuntime:
    return request.app.state.runtime


def _outcome_response(outcome: RunOutcome) -> RunOutcomeResponse:
    return RunOutcomeResponse(
        run_id=outcome.run_id,
        subscription_id=outcome.subscription_id,
        status=outcome.status,
        abort_reason=outcome.abort_reason,
        wake_at=outcome.wake_at,
        next_checkpoint_index=outcome.next_checkpoint_index,
        fired_labels=list(outcome.fired_labels),
        failed_labels=list(outcome.failed_labels),
    )


def _not_found(subscription_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"subscription not found: {subscription_id}")


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    runtime = _runtime(request)
    return HealthResponse(trigger_configured=runtime.gateway.is_configured, pending_wakeups=len(runtime.timer))


@router.post("/subscriptions", response_model=SubscriptionCreateResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(payload: SubscriptionCreateRequest, request: Request) -> SubscriptionCreateResponse:
    runtime = _runtime(request)
    try:
        record = runtime.store.create_subscription(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    workflow_run_id = runtime.gateway.schedule_run(record.subscription_id)
    return SubscriptionCreateResponse(subscription=record, workflow_run_id=workflow_run_id)


@router.get("/subscriptions", response_model=list[SubscriptionRecord])
def list_subscriptions(request: Request, owner_id: str | None = None) -> list[SubscriptionRecord]:
    return _runtime(request).store.list_subscriptions(owner_id=owner_id)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionRecord)
def get_subscription(subscription_id: str, request: Request) -> SubscriptionRecord:
    record = _runtime(request).store.find_subscription(subscription_id)
    if record is None:
        raise _not_found(subscription_id)
    return record


@router.put("/subscriptions/{subscription_id}", response_model=SubscriptionRecord)
def update_subscription(
    subscription_id: str,
    payload: SubscriptionUpdateRequest,
    request: Request,
) -> SubscriptionRecord:
    runtime = _runtime(request)
    previous = runtime.store.find_subscription(subscription_id)
    if previous is None:
        raise _not_found(subscription_id)
    try:
        record = runtime.store.update_subscription(subscription_id, payload.changes())
    except SubscriptionNotFoundError as exc:
        raise _not_found(subscription_id) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if record.renewal_date != previous.renewal_date and record.status == "active":
        logger.info(
            "renewal date of %s moved from %s to %s; scheduling a new reminder run",
            subscription_id,
            previous.renewal_date.isoformat(),
            record.renewal_date.isoformat(),
        )
        runtime.gateway.schedule_run(subscription_id)
    return record


@router.put("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRecord)
def cancel_subscription(subscription_id: str, request: Request) -> SubscriptionRecord:
    runtime = _runtime(request)
    try:
        record = runtime.store.update_subscription(subscription_id, {"status": "canceled"})
    except SubscriptionNotFoundError as exc:
        raise _not_found(subscription_id) from exc
    logger.info("subscription %s canceled", subscription_id)
    return record


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription(subscription_id: str, request: Request) -> Response:
    try:
        _runtime(request).store.delete_subscription(subscription_id)
    except SubscriptionNotFoundError as exc:
        raise _not_found(subscription_id) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/subscriptions/{subscription_id}/reminder-jobs",
    response_model=ReminderJobResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_reminder_job(subscription_id: str, request: Request) -> ReminderJobResponse:
    runtime = _runtime(request)
    if runtime.store.find_subscription(subscription_id) is None:
        raise _not_found(subscription_id)
    try:
        workflow_run_id = runtime.gateway.request_run(subscription_id)
    except TriggerNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except SubscriptionNotFoundError as exc:
        raise _not_found(subscription_id) from exc
    except TriggerRequestError as exc:
        raise HTTPException(status_code=502, detail=f"workflow trigger failed: {exc.error_code}") from exc
    return ReminderJobResponse(subscription_id=subscription_id, workflow_run_id=workflow_run_id)


@router.post("/subscriptions/{subscription_id}/reminder-jobs/run", response_model=RunOutcomeResponse)
def run_reminder_job(subscription_id: str, request: Request) -> RunOutcomeResponse:
    return _outcome_response(_runtime(request).gateway.execute(subscription_id))


@router.get(
    "/subscriptions/{subscription_id}/reminder-jobs/{run_id}",
    response_model=ReminderRunDetailResponse,
)
def get_reminder_job(subscription_id: str, run_id: str, request: Request) -> ReminderRunDetailResponse:
    repository = _runtime(request).repository
    run = repository.get_run(run_id)
    if run is None or run.subscription_id != subscription_id:
        raise HTTPException(status_code=404, detail=f"reminder run not found: {run_id}")
    fires = [
        CheckpointFireView(
            idempotency_key=fire.idempotency_key,
            label=fire.label,
            fire_at=fire.fire_at,
            fired_at=fire.fired_at,
            status=fire.status,
            provider_message_id=fire.provider_message_id,
            error_code=fire.error_code,
            error_message=fire.error_message,
        )
        for fire in repository.list_fires(run_id)
    ]
    return ReminderRunDetailResponse(
        run_id=run.run_id,
        subscription_id=run.subscription_id,
        renewal_date=run.renewal_date,
        status=run.status,
        abort_reason=run.abort_reason,
        next_checkpoint_index=run.next_checkpoint_index,
        wake_at=run.wake_at,
        fired_count=run.fired_count,
        failed_count=run.failed_count,
        created_at=run.created_at,
        updated_at=run.updated_at,
        finished_at=run.finished_at,
        fires=fires,
    )


@router.post(
    "/workflows/subscription/reminder",
    response_model=RunOutcomeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_reminder_workflow(payload: ReminderTriggerRequest, request: Request) -> RunOutcomeResponse:
    gateway = _runtime(request).gateway
    if not gateway.is_configured:
        raise HTTPException(status_code=503, detail="Reminder workflow is not configured")
    return _outcome_response(gateway.execute(payload.subscription_id))
