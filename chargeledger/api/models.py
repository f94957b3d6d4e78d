from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class StartSessionReq(BaseModel):
    deviceId: str
    connectorId: Optional[int] = None
    amount: Optional[Decimal] = None
    chargingPointId: Optional[str] = None
    vehicleId: Optional[int] = None
    id_tag: Optional[str] = Field(default=None, alias="idTag")

    model_config = ConfigDict(populate_by_name=True)


class StopSessionReq(BaseModel):
    deviceId: str
    connectorId: Optional[int] = None
    sessionId: Optional[str] = None


class OperatorStartReq(BaseModel):
    deviceId: str = Field(validation_alias=AliasChoices("deviceId", "cpid"))
    connectorId: Optional[int] = None
    chargingPointId: Optional[str] = None
    id_tag: Optional[str] = Field(default=None, alias="idTag")

    model_config = ConfigDict(populate_by_name=True)


class OperatorStopReq(BaseModel):
    deviceId: str = Field(validation_alias=AliasChoices("deviceId", "cpid"))
    connectorId: Optional[int] = None
    transactionId: Optional[int] = None
    sessionId: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class TopUpReq(BaseModel):
    amount: Decimal
    description: Optional[str] = None
    referenceId: Optional[str] = None


class SessionSummary(BaseModel):
    id: int
    sessionId: str
    status: str
    deviceId: str
    connectorId: int
    amountDeducted: float


class StartResult(BaseModel):
    success: bool
    message: str
    session: SessionSummary
    useQueueFlow: bool


class StoppedSession(BaseModel):
    id: int
    sessionId: str
    energyConsumed: Optional[float] = None
    finalAmount: Optional[float] = None
    refundAmount: Optional[float] = None
    amountDeducted: Optional[float] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None


class StopResult(BaseModel):
    success: bool
    message: str
    stopSuccess: bool
    session: Optional[StoppedSession] = None


class WalletOut(BaseModel):
    customerId: int
    balance: float
    currency: str


class ChargerStatus(BaseModel):
    deviceId: str
    status: str
    cStatus: str
