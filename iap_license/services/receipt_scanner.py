"""Receipt scanner collaborator.

The OCR service itself is external; this module only defines the seam the
scan route calls through, plus the canned bill used for round-trip tests.
"""

from iap_license.logging_config import get_logger
from iap_license.models import FormElement, OrderLine, ScannedBill

logger = get_logger(__name__)


class ScannerUnavailableError(Exception):
    """Raised when no OCR backend is configured or it fails to process an image."""

    pass


class ReceiptScanner:
    """Extracts bill fields from a receipt image."""

    name = "receipt-scanner"

    @property
    def configured(self) -> bool:
        return True

    def scan(self, image: bytes) -> ScannedBill:
        """Scan one receipt image.

        Raises:
            ScannerUnavailableError: If the backend cannot process the image
        """
        raise NotImplementedError


class UnconfiguredScanner(ReceiptScanner):
    """Placeholder used when no OCR endpoint is configured."""

    name = "unconfigured"

    @property
    def configured(self) -> bool:
        return False

    def scan(self, image: bytes) -> ScannedBill:
        logger.error("scanner_not_configured", image_size=len(image))
        raise ScannerUnavailableError("No receipt scanner is configured for this service")


FAKE_SCANNED_BILL = ScannedBill(
    source_name="Fake Scan From iap-license",
    order_lines=[
        OrderLine(item_name="First Fake Item", item_cost="1.00"),
        OrderLine(item_name="Second Fake Item", item_cost="2.00"),
        OrderLine(item_name="Another Fake Item", item_cost="1.23"),
        OrderLine(item_name="Another Fake Item", item_cost="1.23"),
        OrderLine(item_name="Another Fake Item", item_cost="1.23"),
        OrderLine(item_name="Another Fake Item", item_cost="1.23"),
        OrderLine(item_name="Last Fake Item", item_cost="1.00"),
    ],
    form_elements=[
        FormElement(field_name="MerchantName", field_value="King's Fish House Laguna Hills"),
        FormElement(field_name="Subtotal", field_value="9.02"),
        FormElement(field_name="TransactionDate", field_value="4/3/21"),
    ],
)


class CannedScanner(ReceiptScanner):
    """Returns FAKE_SCANNED_BILL for every image; for local runs and tests."""

    name = "canned"

    def scan(self, image: bytes) -> ScannedBill:
        logger.info("canned_scan", image_size=len(image))
        return FAKE_SCANNED_BILL.model_copy(deep=True)
