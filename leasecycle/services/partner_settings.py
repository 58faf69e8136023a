import logging
from typing import Optional

from leasecycle.core.guards import Guard
from leasecycle.core.store import ConditionalStore, TransactionContext
from leasecycle.models.partner import PartnerSettings
from leasecycle.services.base import PartnerSettingService

logger = logging.getLogger(__name__)

PARTNER_SETTINGS = "partner_settings"


class MongoPartnerSettingService(PartnerSettingService):

    def __init__(self, store: ConditionalStore):
        self.store = store

    async def get_settings(self, partner_id: str, tx: Optional[TransactionContext] = None) -> Optional[PartnerSettings]:
        document = await self.store.find_one(PARTNER_SETTINGS, Guard().eq("partnerId", partner_id), tx=tx)
        if document is None:
            logger.warning(f"No partner settings found for partner {partner_id}")
            return None
        return PartnerSettings.model_validate(document)
