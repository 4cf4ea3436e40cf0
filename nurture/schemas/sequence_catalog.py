"""
Sequence catalog schemas - validate step definitions before they reach the database.
"""
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator

DelayUnit = Literal["minutes", "hours", "days"]
StepChannel = Literal["email", "whatsapp", "both"]


class StepDefinition(BaseModel):
    """One step of a sequence. Exactly one of template_key / content_pool is set."""
    step_order: int = Field(..., ge=1)
    name: str
    delay_value: int = Field(..., description="Signed offset from the anchor (negative = before)")
    delay_unit: DelayUnit
    channel: StepChannel
    template_key: Optional[str] = None
    content_pool: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    whatsapp_message: Optional[str] = None
    is_active: bool = True

    @model_validator(mode="after")
    def _check_content_reference(self):
        if bool(self.template_key) == bool(self.content_pool):
            raise ValueError("Step needs exactly one of template_key or content_pool")
        return self


class SequenceDefinition(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    trigger_type: str
    is_active: bool = True
    steps: list[StepDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_orders(self):
        orders = [s.step_order for s in self.steps]
        if len(orders) != len(set(orders)):
            raise ValueError(f"Duplicate step_order in sequence {self.slug}")
        return self


class StepUpdate(BaseModel):
    """Administrative edit of a step. Only fields that are set get written."""
    name: Optional[str] = None
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    whatsapp_message: Optional[str] = None
    is_active: Optional[bool] = None
