from pydantic import BaseModel, ConfigDict, Field


class CreateRoomResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_key: str = Field(serialization_alias="roomKey")
    ws_url: str = Field(serialization_alias="wsUrl")

class RoomDetailsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_key: str = Field(serialization_alias="roomKey")
    capacity: int
    members_count: int = Field(serialization_alias="membersCount")
    is_full: bool = Field(serialization_alias="isFull")

class HealthResponse(BaseModel):
    status: str
    rooms: int
