# qbroker/models/query.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, Literal
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Mongo hands back naive datetimes; they are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class StatusValue(str, Enum):
    UNKNOWN = "unknown"
    RUNNING = "running"
    DONE = "done"
    FAIL = "fail"


class Endpoint(BaseModel):
    model_config = ConfigDict(extra="allow")

    sourceType: str
    sourceName: str = ""
    sourceHost: str
    sourcePort: Optional[int] = None
    public: bool = False
    visibility: Optional[str] = None

    @property
    def base_url(self) -> str:
        host = self.sourceHost.rstrip("/")
        if self.sourcePort is None:
            return host
        return f"{host}:{self.sourcePort}"


class Credentials(BaseModel):
    # token responses carry extra fields (token_type, scope, refresh_token...)
    model_config = ConfigDict(extra="allow")

    username: Optional[str] = None
    password: Optional[str] = None
    access_token: Optional[str] = None
    expires_in: Optional[float] = None
    generated: Optional[datetime] = None

    def has_token(self) -> bool:
        return (
            self.access_token is not None
            and self.expires_in is not None
            and self.generated is not None
        )

    def expires_at(self) -> Optional[datetime]:
        if not self.has_token():
            return None
        return as_utc(self.generated) + timedelta(seconds=float(self.expires_in))

    def token_is_valid(self, now: Optional[datetime] = None) -> bool:
        expires = self.expires_at()
        if expires is None:
            return False
        return (now or utcnow()) < expires


class QueryInput(BaseModel):
    local: Dict[str, Any] = {}
    std: Dict[str, Any] = {}


class QueryStatus(BaseModel):
    status: StatusValue = StatusValue.UNKNOWN
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    info: str = ""


class OutputSlot(BaseModel):
    dataSize: int = 0
    dataId: Optional[str] = None

    @classmethod
    def empty(cls) -> "OutputSlot":
        return cls(dataSize=0, dataId=None)

    @classmethod
    def stored(cls, size: int, blob_id: str) -> "OutputSlot":
        return cls(dataSize=size, dataId=blob_id)


class QueryOutput(BaseModel):
    local: OutputSlot = Field(default_factory=OutputSlot.empty)
    std: OutputSlot = Field(default_factory=OutputSlot.empty)


class QueryDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    endpoint: Endpoint
    credentials: Credentials = Field(default_factory=Credentials)
    input: QueryInput = Field(default_factory=QueryInput)
    status: QueryStatus = Field(default_factory=QueryStatus)
    output: QueryOutput = Field(default_factory=QueryOutput)

    def to_mongo(self) -> Dict[str, Any]:
        """Plain dict for the document store, without the identifier."""
        data = self.model_dump(mode="python", exclude={"id"}, exclude_none=False)
        data["status"]["status"] = self.status.status.value
        return data

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ExecutionResult(BaseModel):
    status: Literal["success", "fail"]
    time: int  # elapsed milliseconds
    data: Optional[Any] = None
    error: Optional[str] = None
