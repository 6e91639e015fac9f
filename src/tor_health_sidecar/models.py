"""
Response models for the health server's JSON bodies
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .tor_status import StatusSnapshot

STATUS_OK = "OK"
STATUS_READY = "READY"
STATUS_NOT_READY = "NOT_READY"
STATUS_ERROR = "ERROR"


@dataclass
class ApiResponse:
    """Standard API response model"""
    status: Optional[str] = None
    message: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        result: Dict[str, Any] = {}
        if self.status:
            result['status'] = self.status
        if self.message:
            result['message'] = self.message
        if self.error:
            result['error'] = self.error
        return result


def snapshot_to_response(snapshot: StatusSnapshot) -> Dict[str, Any]:
    """Diagnostics body for a status snapshot"""
    return {
        'status': STATUS_OK,
        'version': snapshot.version,
        'bootstrap_phase': snapshot.bootstrap_phase,
        'circuit_established': snapshot.circuit_established,
        'num_circuits': snapshot.num_circuits,
        'traffic': {
            'bytes_read': snapshot.traffic.bytes_read,
            'bytes_written': snapshot.traffic.bytes_written,
        },
    }


def create_status_response(status: str, message: str = "") -> Dict[str, Any]:
    return ApiResponse(status=status, message=message).to_dict()


def create_error_response(error: str, status: Optional[str] = None) -> Dict[str, Any]:
    return ApiResponse(status=status, error=error).to_dict()
