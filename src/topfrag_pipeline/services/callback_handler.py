"""Callback Handler - inbound requests from the parser service.

Framework-agnostic: every handler takes decoded request data and returns a
(status_code, body) pair that any HTTP layer can serialise as JSON.

Routes served by the HTTP layer:
    POST /job/{job_id}/event/{event_name} -> handle_event
    POST /job/callback/progress           -> handle_progress
    POST /job/callback/completion         -> handle_completion
"""

import hmac
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.rabbitmq_publisher import MATCH_AGGREGATE_QUEUE, RabbitMQPublisher
from ..validation.event_validator import EventValidationError, UnknownEventError
from .event_ingestor import EventIngestor, IngestionError
from .job_tracker import STATUS_COMPLETED, STATUS_FAILED, JobNotFoundError, JobTracker
from .match_registry import DuplicateMatchError, MatchRegistry


Response = Tuple[int, Dict[str, Any]]


class CallbackHandler:
    """Handles event batches and job callbacks posted by the parser service.

    Example:
        >>> handler = CallbackHandler(tracker, registry, ingestor, publisher, api_key="secret")
        >>> handler.handle_progress({"job_id": job_id, "status": "processing",
        ...                          "progress": 40, "current_step": "Parsing rounds"})
        (200, {'success': True, 'message': 'Progress updated', 'job_id': '...'})
    """

    def __init__(
        self,
        job_tracker: JobTracker,
        match_registry: MatchRegistry,
        event_ingestor: EventIngestor,
        rabbitmq_publisher: Optional[RabbitMQPublisher],
        api_key: Optional[str],
        logger: Optional[logging.Logger] = None,
    ):
        self.job_tracker = job_tracker
        self.match_registry = match_registry
        self.event_ingestor = event_ingestor
        self.rabbitmq_publisher = rabbitmq_publisher
        self.api_key = api_key
        self.logger = logger or logging.getLogger(__name__)

    # ========================================================================
    # Authentication
    # ========================================================================

    def verify_api_key(self, headers: Mapping[str, str]) -> Optional[Response]:
        """Check the shared API key.

        Accepts X-API-Key or an Authorization: Bearer token.

        Returns:
            None when authorised, otherwise the error response to send
        """
        if not self.api_key:
            self.logger.error("Callback API key is not configured")
            return 500, {"success": False, "error": "API key is not configured"}

        normalized = {key.lower(): value for key, value in headers.items()}
        provided = normalized.get("x-api-key")
        if not provided:
            authorization = normalized.get("authorization", "")
            if authorization.lower().startswith("bearer "):
                provided = authorization[7:].strip()

        if not provided:
            return 401, {"success": False, "error": "API key is required"}
        if not hmac.compare_digest(provided.encode("utf-8"), self.api_key.encode("utf-8")):
            self.logger.warning("Rejected callback with invalid API key")
            return 401, {"success": False, "error": "Invalid API key"}
        return None

    # ========================================================================
    # Event batches
    # ========================================================================

    def handle_event(self, job_id: str, event_name: str, body: Any) -> Response:
        """Store one event batch for a job."""
        context = {"job_id": job_id, "event_name": event_name}

        try:
            result = self.event_ingestor.ingest(job_id, event_name, body)
        except UnknownEventError as e:
            return 400, {"success": False, "error": str(e), **context}
        except EventValidationError as e:
            return 400, {"success": False, "error": str(e), "errors": e.errors, **context}
        except JobNotFoundError as e:
            self.logger.warning(str(e))
            return 404, {"success": False, "error": str(e), **context}
        except IngestionError as e:
            self.logger.warning(str(e))
            return 409, {"success": False, "error": str(e), **context}
        except Exception as e:
            self.logger.error(f"Failed to store {event_name} batch for job {job_id}: {e}", exc_info=True)
            return 500, {"success": False, "error": str(e), **context}

        message = "Duplicate batch ignored" if result["duplicate"] else "Events created"
        return 200, {
            "success": True,
            "message": message,
            "inserted": result["inserted"],
            "duplicate": result["duplicate"],
            **context,
        }

    # ========================================================================
    # Job callbacks
    # ========================================================================

    def handle_progress(self, body: Any) -> Response:
        """Record parser progress, applying match metadata when present."""
        errors = self._validate_progress(body)
        if errors:
            return self._invalid(body, errors)

        job_id = body["job_id"]
        try:
            self.job_tracker.find_by_job_id(job_id)
            self.job_tracker.update_progress(
                job_id,
                body["status"],
                int(body["progress"]),
                body["current_step"],
                error_message=body.get("error_message"),
            )

            if body.get("match") is not None:
                self.match_registry.apply_match_metadata(job_id, body["match"], body.get("players"))

        except JobNotFoundError:
            return self._unknown_job(job_id, "progress")
        except DuplicateMatchError as e:
            self.logger.warning(f"Job {job_id}: {e}")
            self.job_tracker.fail_job(job_id, str(e))
            return 409, {"success": False, "error": str(e), "job_id": job_id}
        except Exception as e:
            self.logger.error(f"Failed to record progress for job {job_id}: {e}", exc_info=True)
            return 500, {"success": False, "error": str(e), "job_id": job_id}

        return 200, {"success": True, "message": "Progress updated", "job_id": job_id}

    def handle_completion(self, body: Any) -> Response:
        """Move a job to its terminal state and queue aggregation on success."""
        errors = self._validate_completion(body)
        if errors:
            return self._invalid(body, errors)

        job_id = body["job_id"]
        status = STATUS_COMPLETED if body["status"] == STATUS_COMPLETED else STATUS_FAILED
        error_message = body.get("error")
        if status == STATUS_FAILED and not error_message:
            error_message = f"Parser reported status '{body['status']}'"

        try:
            self.job_tracker.find_by_job_id(job_id)
            transitioned = self.job_tracker.complete_job(
                job_id, status, error_message=error_message, step=body.get("current_step")
            )
        except JobNotFoundError:
            return self._unknown_job(job_id, "completion")
        except Exception as e:
            self.logger.error(f"Failed to complete job {job_id}: {e}", exc_info=True)
            return 500, {"success": False, "error": str(e), "job_id": job_id}

        if transitioned and status == STATUS_COMPLETED:
            self._queue_aggregation(job_id)

        return 200, {"success": True, "message": "Processing completed", "job_id": job_id}

    def _unknown_job(self, job_id: str, callback: str) -> Response:
        # Acknowledged so the parser stops calling back for a deleted job
        self.logger.warning(f"Ignoring {callback} callback for unknown job {job_id}")
        return 200, {"success": True, "message": "Job not found, callback ignored", "job_id": job_id}

    def _queue_aggregation(self, job_id: str) -> None:
        if self.rabbitmq_publisher is None:
            self.logger.warning(f"No publisher configured, aggregation for job {job_id} not queued")
            return
        if not self.rabbitmq_publisher.submit({"job_id": job_id}, MATCH_AGGREGATE_QUEUE):
            # Summaries can be rebuilt later from the stored events
            self.logger.error(f"Failed to queue aggregation for job {job_id}")

    # ========================================================================
    # Request validation
    # ========================================================================

    @staticmethod
    def _validate_progress(body: Any) -> Dict[str, str]:
        if not isinstance(body, dict):
            return {"__root__": "Request body must be a JSON object"}

        errors = CallbackHandler._required(body, ["job_id", "status", "progress", "current_step"])
        progress = body.get("progress")
        if "progress" not in errors:
            if isinstance(progress, bool) or not isinstance(progress, (int, float)):
                errors["progress"] = "must be a number"
            elif not 0 <= progress <= 100:
                errors["progress"] = "must be between 0 and 100"

        if body.get("match") is not None and not isinstance(body["match"], dict):
            errors["match"] = "must be an object"
        players = body.get("players")
        if players is not None and not (
            isinstance(players, list) and all(isinstance(p, dict) for p in players)
        ):
            errors["players"] = "must be a list of objects"
        return errors

    @staticmethod
    def _validate_completion(body: Any) -> Dict[str, str]:
        if not isinstance(body, dict):
            return {"__root__": "Request body must be a JSON object"}
        return CallbackHandler._required(body, ["job_id", "status"])

    @staticmethod
    def _required(body: Dict[str, Any], fields: List[str]) -> Dict[str, str]:
        return {field: "is required" for field in fields if body.get(field) in (None, "")}

    @staticmethod
    def _invalid(body: Any, errors: Dict[str, str]) -> Response:
        job_id = body.get("job_id") if isinstance(body, dict) else None
        return 422, {
            "success": False,
            "error": f"The given data was invalid: {', '.join(sorted(errors))}",
            "errors": errors,
            "job_id": job_id,
        }
