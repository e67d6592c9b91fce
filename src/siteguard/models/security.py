"""
Security event intake models.

Other services report what they observed; the intake endpoint routes
each report to the matching security monitor operation.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..core.security_monitor import SecurityEventType, Severity


class SecurityEventRequest(BaseModel):
    """
    A security observation reported by another service.

    Which optional fields are required depends on the event type:
    - failed_login: ip
    - unauthorized_access: endpoint
    - sensitive_data_access: data_type, user_id
    - admin_action: action, user_id
    - file_upload_anomaly: reason
    - database_error_spike: error_count, time_window
    - anything else: severity, description
    """

    type: SecurityEventType = Field(..., description="Security event type")
    severity: Optional[Severity] = Field(default=None, description="Severity for generic events")
    description: Optional[str] = Field(default=None, max_length=1000)

    user_id: Optional[str] = Field(default=None, max_length=128)
    client_ip: Optional[str] = Field(default=None, max_length=64, description="Address of the observed client")
    user_agent: Optional[str] = Field(default=None, max_length=512, description="User-agent of the observed client")
    endpoint: Optional[str] = Field(default=None, max_length=2048)
    method: Optional[str] = Field(default=None, max_length=16)

    data_type: Optional[str] = Field(default=None, max_length=128)
    action: Optional[str] = Field(default=None, max_length=256)
    target_resource: Optional[str] = Field(default=None, max_length=256)
    reason: Optional[str] = Field(default=None, max_length=512)
    file_info: Optional[Dict[str, Any]] = None
    error_count: Optional[int] = Field(default=None, ge=0)
    time_window: Optional[str] = Field(default=None, max_length=64)

    metadata: Dict[str, Any] = Field(default_factory=dict)


class SecurityEventResponse(BaseModel):
    """Response model for event intake."""

    recorded: bool = Field(..., description="False when the report fell below its recording threshold")
    event: Optional[Dict[str, Any]] = Field(default=None, description="The recorded event")
