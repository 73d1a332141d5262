import uuid
import threading
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .flash_engine import FlashOrchestrator, FlashProgress, FlashRequest

logger = logging.getLogger(__name__)

# Job storage (in-process; jobs do not survive a restart)
flash_jobs: Dict[str, Dict[str, Any]] = {}
_jobs_lock = threading.Lock()
# transport -> one-shot operation holding it
_reserved_transports: Dict[str, str] = {}

OrchestratorFactory = Callable[[], FlashOrchestrator]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _busy_job(transport: str) -> Optional[Dict[str, Any]]:
    for job in flash_jobs.values():
        if job["transport"] == transport and job["status"] in ("starting", "running"):
            return job
    return None


def _check_transport_free(transport: str):
    """Caller must hold _jobs_lock"""
    busy = _busy_job(transport)
    if busy:
        raise ValueError(f"Transport {transport} is busy with job {busy['id']}")
    if transport in _reserved_transports:
        raise ValueError(f"Transport {transport} is busy with {_reserved_transports[transport]}")


def reserve_transport(transport: str, operation: str = "a device operation"):
    """
    Claim a transport for a one-shot device operation (table read, backup, erase, reboot).

    Raises:
        ValueError: a flash job or another operation holds the transport
    """
    with _jobs_lock:
        _check_transport_free(transport)
        _reserved_transports[transport] = operation


def release_transport(transport: str):
    with _jobs_lock:
        _reserved_transports.pop(transport, None)


def start_flash_job(
    request: FlashRequest,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
) -> str:
    """
    Start a flash job on a worker thread.

    Raises:
        ValueError: another job or device operation holds the same transport
    """
    job_id = str(uuid.uuid4())
    transport = request.transport_key
    orchestrator = (orchestrator_factory or FlashOrchestrator)()

    with _jobs_lock:
        _check_transport_free(transport)

        job = {
            "id": job_id,
            "vendor": request.vendor.value,
            "transport": transport,
            "request": request,
            "status": "starting",
            "state": "idle",
            "progress": None,
            "logs": [],
            "report": None,
            "created_at": _now(),
            "finished_at": None,
            "cancel_event": threading.Event(),
        }
        flash_jobs[job_id] = job

    thread = threading.Thread(target=_run_flash, args=(job, orchestrator), name=f"flash-{job_id[:8]}")
    thread.daemon = True
    try:
        thread.start()
    except RuntimeError:
        with _jobs_lock:
            flash_jobs.pop(job_id, None)
        raise

    logger.info(f"Started flash job {job_id} ({request.vendor.value} on {transport})")
    return job_id


def _run_flash(job: Dict[str, Any], orchestrator: FlashOrchestrator):
    """Run one orchestrator session and record its logs, progress and report"""

    def on_log(message: str, level: str):
        job["logs"].append(message)
        logger.log(getattr(logging, level.upper(), logging.INFO), f"[{job['id'][:8]}] {message}")

    def on_progress(progress: FlashProgress):
        job["state"] = progress.state.value
        job["progress"] = progress.to_dict()

    orchestrator.set_callbacks(on_progress=on_progress, on_log=on_log)
    job["status"] = "running"

    try:
        report = orchestrator.execute(job["request"], cancel_event=job["cancel_event"])
        job["report"] = report.to_dict()
        job["status"] = report.status
    except Exception as e:
        # execute() reports its own failures; this only guards the worker thread
        logger.exception(f"Flash job {job['id']} crashed")
        job["logs"].append(f"ERROR: {e}")
        job["status"] = "failed"
    finally:
        job["finished_at"] = _now()


def get_flash_job(job_id: str) -> Optional[Dict[str, Any]]:
    """Get flash job status"""
    return flash_jobs.get(job_id)


def list_flash_jobs() -> List[Dict[str, Any]]:
    return sorted(flash_jobs.values(), key=lambda job: job["created_at"], reverse=True)


def cancel_flash_job(job_id: str) -> bool:
    """Signal a running job to stop. Returns False if it is unknown or already finished."""
    job = flash_jobs.get(job_id)
    if not job or job["status"] not in ("starting", "running"):
        return False

    job["cancel_event"].set()
    job["logs"].append("Cancellation requested")
    logger.info(f"Cancellation requested for flash job {job_id}")
    return True


def serialize_job(job: Dict[str, Any], include_logs: bool = False) -> Dict[str, Any]:
    """Public view of a job record"""
    data = {
        "id": job["id"],
        "vendor": job["vendor"],
        "transport": job["transport"],
        "status": job["status"],
        "state": job["state"],
        "progress": job["progress"],
        "report": job["report"],
        "created_at": job["created_at"],
        "finished_at": job["finished_at"],
        "log_count": len(job["logs"]),
    }
    if include_logs:
        data["logs"] = list(job["logs"])
    return data


__all__ = [
    "flash_jobs",
    "start_flash_job",
    "reserve_transport",
    "release_transport",
    "get_flash_job",
    "list_flash_jobs",
    "cancel_flash_job",
    "serialize_job",
]
