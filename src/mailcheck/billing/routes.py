"""Partner marketplace webhook route.

Subscription lifecycle events from the partner marketplace provision,
top up, and deactivate API keys.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from mailcheck.billing.provisioner import AccountProvisioner, ProvisioningError

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

logger = logging.getLogger("mailcheck-webhooks")


def get_provisioner(request: Request) -> AccountProvisioner:
    """FastAPI dependency returning the provisioner built at startup."""
    return request.app.state.provisioner


@router.post("/partner")
async def partner_webhook(
    request: Request,
    provisioner: AccountProvisioner = Depends(get_provisioner),
):
    """Handle partner subscription webhooks.

    Processes subscription lifecycle events:
    - subscription.created: create user (if needed) and issue a key
    - subscription.cancelled: deactivate the user's partner keys
    - subscription.updated: change plan and top up credits
    """
    try:
        payload = await request.json()
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a JSON object",
        ) from e

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook body must be a JSON object",
        )

    try:
        outcome = await provisioner.handle_event(payload)
    except ProvisioningError as e:
        logger.error(f"Webhook processing failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(e)},
        )

    if not outcome.success:
        logger.warning(f"Rejected {outcome.event.value} webhook: {outcome.error}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": outcome.error},
        )

    return {"success": True, "message": outcome.message, "data": outcome.data}
