import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

VERDICTS = ("Promising", "Risky", "Needs Refinement")
MAX_IDEA_LENGTH = 10000


class CamelModel(BaseModel):
    """Wire format is camelCase (what the web client sends and reads)."""
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# --- Analysis report ---
class Competitor(CamelModel):
    name: str
    differentiation: str = ""


class ValidationReport(CamelModel):
    summary_verdict: Literal["Promising", "Risky", "Needs Refinement"]
    one_line_takeaway: str = Field(min_length=1)
    market_reality: str
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    competitors: List[Competitor] = Field(default_factory=list)
    monetization_strategies: List[str] = Field(default_factory=list)
    why_people_pay: str = ""
    viability_score: float = Field(ge=0, le=100)
    next_steps: List[str] = Field(default_factory=list)

    @field_validator("summary_verdict", mode="before")
    @classmethod
    def normalize_verdict(cls, v):
        if isinstance(v, str):
            cleaned = " ".join(v.strip().split()).lower()
            for verdict in VERDICTS:
                if verdict.lower() == cleaned:
                    return verdict
        return v

    @field_validator("pros", "cons", "competitors", "monetization_strategies", "next_steps", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return [] if v is None else v


# --- Analyze / chat ---
class Attachment(CamelModel):
    mime_type: str = Field(min_length=1)
    data: str = Field(min_length=1)  # base64


class AnalyzeRequest(CamelModel):
    idea: str = Field("", max_length=MAX_IDEA_LENGTH)
    attachment: Optional[Attachment] = None
    provider: Optional[str] = None

    @model_validator(mode="after")
    def require_idea_or_attachment(self):
        self.idea = self.idea.strip()
        if not self.idea and self.attachment is None:
            raise ValueError("idea must not be empty unless an attachment is provided")
        return self


class AnalyzeResponse(ValidationReport):
    id: int
    created_at: datetime.datetime
    original_idea: str
    provider: Optional[str] = None
    remaining_credits: Union[int, Literal["unlimited"]]


class ChatContext(CamelModel):
    original_idea: str
    report: Dict[str, Any]


class ChatRequest(CamelModel):
    message: str = Field(min_length=1, max_length=MAX_IDEA_LENGTH)
    context: ChatContext


class ChatResponse(BaseModel):
    text: str


# --- Accounts ---
class Preferences(CamelModel):
    email_notifications: bool = True
    marketing_emails: bool = False
    theme: Literal["light", "dark"] = "light"


class PreferencesUpdate(CamelModel):
    email_notifications: Optional[bool] = None
    marketing_emails: Optional[bool] = None
    theme: Optional[Literal["light", "dark"]] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "forbid"


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    preferences: Optional[PreferencesUpdate] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "forbid"


class UserProfile(CamelModel):
    id: int
    email: str
    name: str
    is_pro: bool
    credits: int
    preferences: Preferences
    created_at: Optional[datetime.datetime] = None


class SignupRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: Optional[str] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class GoogleLoginRequest(CamelModel):
    token: str = Field(min_length=1)


class AuthResponse(CamelModel):
    user: UserProfile
    token: str
    is_new_user: Optional[bool] = None


class Token(BaseModel): access_token: str; token_type: str


# --- Reports ---
class ReportItem(CamelModel):
    id: int
    created_at: datetime.datetime
    original_idea: str
    summary_verdict: str
    viability_score: float
    one_line_takeaway: str
    market_reality: str
    provider: Optional[str] = None
    full_report_data: Dict[str, Any]


# --- Waitlist / payments ---
class WaitlistRequest(CamelModel):
    email: EmailStr
    source: Optional[str] = Field(None, max_length=100)


class WaitlistResponse(BaseModel):
    success: bool
    id: int


class CheckoutRequest(CamelModel):
    plan: Literal["single", "maker", "pro"] = "single"


class CheckoutResponse(CamelModel):
    checkout_url: str
