from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class UserResponse(BaseModel):
    id: str
    telegram_id: int
    balance: float
    promo_gen: int


class BalancesResponse(BaseModel):
    balance: float
    promo_gen: Optional[int] = None


class AuthTelegramRequest(BaseModel):
    initData: str = Field(..., min_length=1, max_length=8192)


class AuthTelegramResponse(BaseModel):
    accessToken: str
    user: UserResponse


class MeResponse(BaseModel):
    user: UserResponse


class UploadFileSpec(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    contentType: str = Field(..., min_length=1, max_length=100)
    sizeBytes: int = Field(..., gt=0)


class CreateSignedUploadRequest(BaseModel):
    files: List[UploadFileSpec] = Field(..., min_length=1)


class SignedUploadItem(BaseModel):
    path: str
    upload_url: str


class CreateSignedUploadResponse(BaseModel):
    bucket: str
    items: List[SignedUploadItem]


class GenerateInput(BaseModel):
    kind: Literal["image", "video"]
    path: str = Field(..., min_length=1, max_length=512)


class GenerateRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=64)
    prompt: str = Field("", max_length=8000)
    params: Dict[str, Any] = Field(default_factory=dict)
    inputs: Annotated[List[GenerateInput], Field(max_length=16)] = Field(default_factory=list)
    style: Optional[str] = Field(None, min_length=1, max_length=64)
    counter: Optional[int] = Field(None, ge=1, le=6)
    prompt_ai: Optional[bool] = None


class JobResponse(BaseModel):
    id: str
    model: str
    type: str
    prompt: str
    params: Dict[str, Any]
    inputs: List[Dict[str, Any]]
    status: str
    cost: float
    promo_credits_consumed: int
    unit_count: int
    output_url: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: str
    finished_at: Optional[str] = None


class JobEnvelope(BaseModel):
    job: JobResponse


class JobsResponse(BaseModel):
    items: List[JobResponse]


class ErrorDetail(BaseModel):
    code: str
    message: str


class FailedJobRef(BaseModel):
    id: str
    status: Literal["failed"] = "failed"


class GenerateSuccessResponse(BaseModel):
    job: JobResponse
    user: BalancesResponse


class GenerateFailureResponse(BaseModel):
    job: Optional[FailedJobRef] = None
    error: ErrorDetail
    user: Optional[BalancesResponse] = None


class InputRuleResponse(BaseModel):
    kind: str
    min: int
    max: int
    max_size_mb: int
    mime_types: List[str]


class ModelResponse(BaseModel):
    id: str
    name: str
    type: str
    description: str
    prompt_required: bool
    inputs: Optional[InputRuleResponse] = None
    params: List[Dict[str, Any]]
    defaults: Dict[str, Any]
    max_units: int


class ModelsResponse(BaseModel):
    items: List[ModelResponse]
