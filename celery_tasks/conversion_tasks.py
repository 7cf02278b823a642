from celery_config import celery_app
from sqlalchemy.exc import OperationalError
from data.database import ConversionEvent, SessionLocal
from typing import Any
from datetime import datetime
from config import config  # initialize logging
import logging

logger = logging.getLogger(__name__)


# ignore result as the caller only needs the task id
@celery_app.task(bind=True, max_retries=3, default_retry_delay=30, ignore_result=True)
def insert_conversion_event(self, event_data_dict: dict[str, Any]):
    """
    Appends a recorded conversion to the event log used by the analytics timeline.
    Counters are already committed by the request, this only writes the log row.
    """
    db = SessionLocal()
    db_event = None
    try:
        db_event = ConversionEvent(
            test_id=event_data_dict['test_id'],
            variant_id=event_data_dict['variant_id'],
            session_id=event_data_dict['session_id'],
            conversion_value=event_data_dict.get('conversion_value') or 0.0,
            metadata_json=event_data_dict.get('metadata_json'),
            created_at=datetime.fromisoformat(event_data_dict['created_at']),
        )

        db.add(db_event)
        db.commit()

        logger.info("Task %s[%s]. Inserted conversion event for session %s on test %s.",
                    self.name, self.request.id, db_event.session_id, db_event.test_id)
    except OperationalError as exc:
        db.rollback()
        logger.error("Database unavailable in conversion task. Retrying...")
        raise self.retry(exc=exc)
    except Exception as exc:
        db.rollback()
        logger.error("Failed to insert conversion event: %s. Payload: %s", exc, event_data_dict)
        raise  # re-raise so Celery marks FAILURE and we can debug it

    finally:
        db.close()
