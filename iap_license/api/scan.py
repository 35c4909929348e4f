"""Receipt scan endpoint.

Implements:
- POST /scan?option=0|1|2   multipart: image file + license form field

Options:
    0 - scan the image and use one scan
    1 - round-trip diagnostics, nothing scanned or charged
    2 - return the canned bill and use one scan (scanner must be configured)
"""

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import PlainTextResponse

from iap_license.api.dependencies import authorize_request, bad_request, error_detail, get_catalog, parse_claim_text
from iap_license.logging_config import get_logger
from iap_license.models import ScannedBill
from iap_license.repositories.quota_ledger import QuotaLedger
from iap_license.services.receipt_scanner import FAKE_SCANNED_BILL, ReceiptScanner, ScannerUnavailableError

logger = get_logger(__name__)
router = APIRouter(tags=["Scan"])

# Anything smaller cannot reasonably be a receipt photo
MIN_IMAGE_BYTES = 1000


def _unprocessable(message: str) -> HTTPException:
    return HTTPException(status_code=422, detail=error_detail(422, message, "FAILED_PRECONDITION"))


@router.post("/scan", response_model=ScannedBill)
def scan_receipt(
    request: Request,
    image: UploadFile = File(...),
    license: str = Form(..., description="Purchase claim JSON for a scan product"),
    option: int = Query(0, description="0 scan, 1 diagnostics, 2 canned result"),
):
    """Scan a receipt image against the caller's scan quota."""
    content = image.file.read()
    if len(content) <= MIN_IMAGE_BYTES:
        logger.warning("scan_image_too_small", size=len(content))
        raise bad_request("No (or insufficient) image data")
    if option not in (0, 1, 2):
        raise bad_request(f"Unknown scan option {option}")

    claim = parse_claim_text(license, unescape=False)
    if claim is None:
        raise bad_request("A license is required")
    result = authorize_request(
        request,
        get_catalog(request).consumable_product_ids(),
        claim=claim,
        issue_token=False,
        # The quota lives on the claimed order, so a bearer token alone is not enough
        use_token=False,
    )

    logger.info("scan_authorized", order_id=result.order_id, scans_left=result.scans_left, option=option)
    if not result.scans_left:
        return Response(status_code=204)

    if option == 1:
        return PlainTextResponse(
            f"Content: license\norderId={result.order_id}\n\nLength = {len(content)}\n"
        )

    scanner: ReceiptScanner = request.app.state.scanner
    ledger: QuotaLedger = request.app.state.ledger
    if option == 2:
        if not scanner.configured:
            raise _unprocessable("No receipt scanner is configured")
        bill = FAKE_SCANNED_BILL.model_copy(deep=True)
    else:
        try:
            bill = scanner.scan(content)
        except ScannerUnavailableError as e:
            raise _unprocessable(str(e))

    bill.scans_left = ledger.decrement_scans(result.order_id)
    logger.info("scan_completed", order_id=result.order_id, scans_left=bill.scans_left, lines=len(bill.order_lines))
    return bill
