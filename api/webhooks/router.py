from __future__ import annotations

import json

from fastapi import APIRouter, HTTPException, Request, status

from api.triggers import services as trigger_services

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


@router.post("/apps/{app_id}", status_code=status.HTTP_202_ACCEPTED)
async def app_webhook(app_id: int, request: Request):
    raw_body = (await request.body()).decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw_body) if raw_body.strip() else {}
    except json.JSONDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body must be JSON") from None

    job_ids = await trigger_services.handle_app_webhook(
        app_id,
        payload=payload,
        raw_body=raw_body,
        headers=request.headers,
    )
    return {"ok": True, "jobIds": job_ids}


__all__ = ["router"]
