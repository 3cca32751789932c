# Dead-time flow: categorized non-productive downtime.
# Version: 1.0.0
# Dead time excludes any phase work; codes may require a product or sheet link.

import logging

from .client import ProductionApi
from .constants import StationSettings
from .errors import MissingLinkageError
from .guard import GuardPurpose, SessionGuard
from .models import DeadTimeSession, SheetLinkage

logger = logging.getLogger(__name__)


class DeadTimeRunner:
    """Opens and closes dead-time records for an operator.

    Attributes:
        username: Operator.
        settings: Station settings holding the dead-time catalogue.
    """

    def __init__(self, api: ProductionApi, username: str, settings: StationSettings) -> None:
        self.api = api
        self.username = username
        self.settings = settings

    async def current(self) -> DeadTimeSession | None:
        """Read the operator's open dead time, if any."""
        status = await self.api.get_live_status()
        return status.dead_for(self.username)

    async def start(
        self,
        code: int,
        manual_product_id: str = "",
        sheet_code: str | None = None,
        description: str | None = None,
    ) -> DeadTimeSession:
        """Open a dead-time record.

        A manually entered product id takes precedence over the product of
        a scanned sheet.

        Args:
            code: Dead-time code from the catalogue.
            manual_product_id: Product id typed by the operator.
            sheet_code: Code of a scanned sheet to link.
            description: Text stored with the record (defaults to the code label).

        Returns:
            The open DeadTimeSession.

        Raises:
            ConfigurationError: If the code is not in the catalogue.
            MissingLinkageError: If the code's linkage requirement is not met.
            ExclusivityConflictError: If any session is already open.
        """
        meta = self.settings.get_dead_time_code(code)
        manual_product_id = (manual_product_id or "").strip()

        if meta.requires_product_manual and not manual_product_id:
            raise MissingLinkageError(code, "product")

        linkage = SheetLinkage(product_id=manual_product_id or None)
        if sheet_code:
            sheet = await self.api.get_production_sheet_by_qr(sheet_code)
            linkage = SheetLinkage(
                product_id=manual_product_id or sheet.product_id or None,
                sheet_id=sheet.id,
                order_number=sheet.order_number or None,
                sheet_number=sheet.sheet_number or None,
            )

        if meta.requires_product_or_sheet and linkage.is_empty:
            raise MissingLinkageError(code, "product_or_sheet")

        await SessionGuard(self.api).ensure_clear(self.username, GuardPurpose.START_DEAD_TIME)

        text = description if description is not None else meta.label
        dead_time_id = await self.api.start_dead_time(self.username, code, text, linkage)
        logger.info(f"{self.username} started dead time {code} ({dead_time_id})")

        return DeadTimeSession(
            id=dead_time_id,
            username=self.username,
            code=code,
            description=text,
            linkage=linkage,
        )

    async def finish(self, dead_time_id: str) -> None:
        """Close a dead-time record by id."""
        await self.api.finish_dead_time(dead_time_id)
        logger.info(f"{self.username} finished dead time {dead_time_id}")
