from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

# -------------------- REST --------------------

class SendMessageIn(BaseModel):
    """Body for POST /chats."""
    receiver_id: Optional[str] = Field(default=None, alias="receiverId")
    receiver_model: str = Field(default="User", alias="receiverModel")
    message: str
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    medical_request_id: Optional[str] = Field(default=None, alias="medicalRequestId")
    pharmacy_id: Optional[str] = Field(default=None, alias="pharmacyId")
    patient_id: Optional[str] = Field(default=None, alias="patientId")
    sender_role: Optional[str] = Field(default=None, alias="senderRole")
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")

    class Config:
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatHistoryOut(BaseModel):
    """GET /chats/... response. Older handlers fill `messages`, newer ones `data`."""
    success: bool = False
    messages: Optional[List[Any]] = None
    data: Optional[List[Any]] = None
    message: Optional[str] = None

    def items(self) -> List[Any]:
        return self.messages or self.data or []


class SendMessageOut(BaseModel):
    """POST /chats response; `data` holds the persisted message."""
    success: bool = False
    data: Optional[Dict[str, Any]] = None
    message: Optional[Any] = None

    def persisted(self) -> Optional[Dict[str, Any]]:
        if self.data:
            return self.data
        # some handlers put the message object under `message`
        if isinstance(self.message, dict):
            return self.message
        return None

# -------------------- Socket.IO --------------------

class JoinPharmacyRoomPayload(BaseModel):
    pharmacy_id: str = Field(alias="pharmacyId")
    medical_request_id: Optional[str] = Field(default=None, alias="medicalRequestId")
    patient_id: Optional[str] = Field(default=None, alias="patientId")
    order_id: Optional[str] = Field(default=None, alias="orderId")

    class Config:
        populate_by_name = True


class PatientSendMessagePayload(BaseModel):
    """`patientSendMessage`: message into an order-scoped room."""
    pharmacy_id: str = Field(alias="pharmacyId")
    medical_request_id: str = Field(alias="medicalRequestId")
    order_id: str = Field(alias="orderId")
    patient_id: str = Field(alias="patientId")
    sender: str
    message: str
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")

    class Config:
        populate_by_name = True


class PatientToPharmacyPayload(BaseModel):
    """`patientToPharmacyMessage`: message into the general pharmacy room."""
    pharmacy_id: str = Field(alias="pharmacyId")
    message: str
    request_id: Optional[str] = Field(default=None, alias="requestId")
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")

    class Config:
        populate_by_name = True


class ChatErrorPayload(BaseModel):
    message: str = "Chat error"
