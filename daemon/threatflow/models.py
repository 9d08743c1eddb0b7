from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProviderConfig(BaseModel):
    """Resolved settings for one backend. Immutable once handed to a provider."""
    model_config = ConfigDict(frozen=True)

    provider_name: str = Field(..., description="Registry id of the backend (e.g. anthropic)")
    model: str = Field(default="", description="Model used for text analysis")
    api_key: Optional[str] = Field(default=None, description="Backend API key, if it needs one")
    base_url: Optional[str] = Field(default=None, description="Override for the backend endpoint")
    # only the local backend distinguishes these
    text_model: Optional[str] = None
    vision_model: Optional[str] = None


class AnalysisRequest(BaseModel):
    text: str = Field(..., description="Article body to analyse")
    vision_analysis: Optional[str] = Field(
        default=None, description="Prose describing the article's images, placed ahead of the text"
    )
    system: Optional[str] = Field(default=None, description="System prompt override")


class ImageInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base64_data: str = Field(..., alias="base64Data")
    media_type: str = Field(..., alias="mediaType")


class VisionRequest(BaseModel):
    images: List[ImageInput] = Field(default_factory=list)
    article_text: str = Field(default="", description="Article context given to the vision model")
    prompt: Optional[str] = Field(default=None, description="Replaces the built-in vision prompt")


class VisionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analysis_text: str = Field(..., alias="analysisText")
    tokens_used: Optional[int] = Field(default=None, alias="tokensUsed")
    confidence: Optional[Confidence] = None


class ProviderDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    display_name: str = Field(..., alias="displayName")
    models: List[str] = Field(default_factory=list)
    default_model: str = Field(..., alias="defaultModel")
    configured: bool = False


# ---- HTTP bodies ------------------------------------------------------------

class StreamRequest(BaseModel):
    """Body of ``POST /api/ai-stream``."""
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., description="Article body to analyse")
    vision_analysis: Optional[str] = Field(default=None, alias="visionAnalysis")
    system: Optional[str] = None
    provider: Optional[str] = Field(default=None, description="Provider id or alias; default provider when omitted")
    model: Optional[str] = Field(default=None, description="Model override for this request only")
    images: List[ImageInput] = Field(
        default_factory=list, description="Images to describe before the text analysis starts"
    )

    def to_analysis(self, vision_analysis: Optional[str] = None) -> AnalysisRequest:
        return AnalysisRequest(
            text=self.text,
            vision_analysis=vision_analysis or self.vision_analysis,
            system=self.system,
        )


class VisionAnalysisRequest(BaseModel):
    """Body of ``POST /api/vision-analysis``."""
    model_config = ConfigDict(populate_by_name=True)

    images: List[ImageInput] = Field(default_factory=list)
    article_text: str = Field(default="", alias="articleText")
    prompt: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_vision(self) -> VisionRequest:
        return VisionRequest(images=self.images, article_text=self.article_text, prompt=self.prompt)


class ProvidersResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    providers: List[ProviderDescriptor]
    default_provider: Optional[str] = Field(default=None, alias="defaultProvider")
    has_configured_providers: bool = Field(default=False, alias="hasConfiguredProviders")
