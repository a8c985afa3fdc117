from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..runtime_utils import sanitize_party_code, sanitize_player_name


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    requestId: str | None = Field(default=None, max_length=64)


class PartyCodeMessage(InboundMessage):
    partyCode: str = Field(validation_alias=AliasChoices("partyCode", "code"))

    @field_validator("partyCode", mode="before")
    @classmethod
    def normalize_party_code(cls, value: Any) -> str:
        code = sanitize_party_code(value)
        if not code:
            raise ValueError("partyCode is required")
        return code


class PlayerNameMixin(BaseModel):
    playerName: str

    @field_validator("playerName", mode="before")
    @classmethod
    def normalize_player_name(cls, value: Any) -> str:
        name = sanitize_player_name(value)
        if not name:
            raise ValueError("playerName is required")
        return name


class CreatePartyMessage(InboundMessage, PlayerNameMixin):
    gameId: str = Field(default="quiz", min_length=1, max_length=40)
    difficulty: Literal["easy", "medium", "hard"] = Field(default="medium")
    timePerQuestion: float = Field(default=30, gt=0, le=600)
    numQuestions: int = Field(default=10, ge=1, le=50)
    categories: list[str] = Field(default_factory=list, max_length=50)

    @field_validator("difficulty", mode="before")
    @classmethod
    def lower_difficulty(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class GetPartyStateMessage(PartyCodeMessage):
    pass


class JoinPartyMessage(PartyCodeMessage, PlayerNameMixin):
    pass


class StartGameMessage(PartyCodeMessage):
    isRematch: bool = False


class SubmitAnswerMessage(PartyCodeMessage):
    questionIndex: int = Field(ge=0)
    answer: Any = None


class SubmitValidationMessage(PartyCodeMessage):
    targetPlayerId: str = Field(
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("targetPlayerId", "validatedPlayerId"),
    )
    targetQuestionIndex: int = Field(
        ge=0,
        validation_alias=AliasChoices("targetQuestionIndex", "validatedQuestionIndex"),
    )
    isCorrect: bool


class AdvanceValidationMessage(PartyCodeMessage):
    questionIndex: int = Field(ge=0)
    playerIndex: int = Field(ge=0)


class LeavePartyMessage(PartyCodeMessage):
    pass


class KickPlayerMessage(PartyCodeMessage):
    playerId: str = Field(min_length=1, max_length=64)


class ResetPartyCodeMessage(PartyCodeMessage):
    pass


class RematchVoteMessage(PartyCodeMessage):
    pass
