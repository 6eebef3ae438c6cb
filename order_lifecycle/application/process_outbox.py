import logging

from order_lifecycle.application.interfaces import EventPublisher

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(self, unit_of_work, publisher: EventPublisher):
        self._uow = unit_of_work
        self._publisher = publisher

    async def __call__(self, limit: int = 20) -> int:
        """Publish pending outbox events. Returns how many were published."""
        published = 0

        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(limit=limit)

            for event in pending:
                success = await self._publisher.publish(
                    event_type=event["event_type"],
                    payload={"event_id": event["id"], **event["event_data"]},
                    key=event["order_id"],
                )
                if not success:
                    # keep order: later events for the same order wait for this one
                    logger.warning(f"Outbox event {event['id']} not published, retrying on next pass")
                    break

                await uow.outbox.mark_as_published(event["id"])
                # a published event is recorded before the next one goes out
                await uow.commit()
                published += 1
                logger.info(f"Published {event['event_type']} event {event['id']}")

        return published
