from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BrokerConfig(BaseModel):
    host: str = "localhost"
    port: int = 1883
    transport: str = "tcp"
    use_tls: bool = False
    ws_path: str = "/"
    username: Optional[str] = None
    password: Optional[str] = None
    client_id_base: str = "iot-gateway"
    keepalive: int = 30
    reconnect_ms: int = 5000
    connect_timeout_ms: int = 15000
    clean_session: bool = True
    will_topic: str = "backend/status"
    service_name: str = "backend"
    command_qos: int = Field(default=2, ge=0, le=2)
    subscribe_qos: int = Field(default=1, ge=0, le=2)


class IdentityClaim(BaseModel):
    """
    What a device says about itself when it announces: who owns it and
    how to reach it. Built from a registration message or from the first
    response of an unknown board.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device_id: str = Field(alias="deviceId")
    short_id: Optional[str] = Field(default=None, alias="shortId")
    email: Optional[str] = Field(default=None, alias="userEmail")
    user_id: Optional[Any] = Field(default=None, alias="userId")
    mac_address: Optional[str] = Field(default=None, alias="mac")
    display_name: Optional[str] = Field(default=None, alias="deviceName")
    location: Optional[str] = Field(default=None, alias="deviceLocation")
    reply_topic: Optional[str] = Field(default=None, alias="replyTopic")

    @model_validator(mode="before")
    @classmethod
    def _mac_from_details(cls, data: Any) -> Any:
        # Firmware reports the MAC either at top level or under details
        if isinstance(data, dict):
            details = data.get("details")
            if isinstance(details, dict) and details.get("mac"):
                data = {**data, "mac": details["mac"]}
        return data

    def has_owner_hint(self) -> bool:
        return any(v not in (None, "") for v in (self.short_id, self.email, self.user_id))


class RegistrationAck(BaseModel):
    action: str = "registered"
    status: str
    user_short_id: Optional[str] = None
    timestamp: str
    error: Optional[str] = None


class BoardRecord(BaseModel):
    board_id: str
    user_id: Any
    mac_address: Optional[str] = None
    name: str
    location: str = ""
    mqtt_topic_cmd: Optional[str] = None
    mqtt_topic_resp: Optional[str] = None
    is_online: bool = False
    firmware_version: Optional[str] = None
    last_seen: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump()
