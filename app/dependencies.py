from functools import lru_cache
from app.core.config import get_settings
from app.services.mpesa import MpesaClient, MpesaConfig


@lru_cache
def get_mpesa_client() -> MpesaClient:
    return MpesaClient(MpesaConfig.from_settings(get_settings()))
