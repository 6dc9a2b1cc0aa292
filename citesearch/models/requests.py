# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI validates request bodies
# against these and returns 422 for anything malformed.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AskRequest(BaseModel):
    """
    Request body for POST /ask and POST /ask/stream.

    Example:
        {
            "question": "What did Herman Bavinck teach about revelation?",
            "language": "zh",
            "topic": "Bible-Genesis"
        }
    """

    question: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="The natural-language question to answer",
        examples=["What did Herman Bavinck teach about revelation?"],
    )

    # "zh" localizes author names in the answer; other values leave them
    # as they appear in the corpus.
    language: str = Field(
        default="zh",
        max_length=16,
        description="Language of the answer's author names (e.g. 'zh', 'en')",
    )

    # When set, the question is answered from this topic's retrieval store
    # only instead of the default corpus.
    topic: str | None = Field(
        default=None,
        max_length=200,
        description="Restrict retrieval to one topic store, matched by name",
        examples=["Bible-Genesis"],
    )

    @field_validator("question")
    @classmethod
    def _question_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("question must not be blank")
        return stripped

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"question": "What is common grace?", "language": "zh"},
                {
                    "question": "What happens on the first day?",
                    "language": "en",
                    "topic": "Bible-Genesis",
                },
            ]
        }
    )
