import httpx
import logging

from order_lifecycle.application.interfaces import PaymentsService
from order_lifecycle.domain.models import PaymentConfig
from order_lifecycle.domain.exceptions import PaymentServiceError

logger = logging.getLogger(__name__)


class HTTPPaymentsClient(PaymentsService):
    def __init__(self, base_url: str, api_token: str, timeout: float = 10.0, transport=None):
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout = timeout
        self._transport = transport

    async def get_payment_config(self) -> PaymentConfig:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    f"{self._base_url}/api/payments/config",
                    headers={"X-API-Key": self._api_token},
                    timeout=self._timeout
                )

                if response.status_code == 200:
                    data = response.json()
                    return PaymentConfig(
                        cod_enabled=data.get("codEnabled", data.get("cod_enabled", True)),
                        online_payment_enabled=data.get(
                            "onlinePaymentEnabled", data.get("online_payment_enabled", False)
                        ),
                    )
                elif response.status_code == 404:
                    logger.info("No payment config stored, falling back to defaults")
                    return PaymentConfig()
                else:
                    raise PaymentServiceError(f"Payment service error: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Payment service connection error: {e}")
            raise PaymentServiceError(f"Payment service unavailable: {str(e)}")
