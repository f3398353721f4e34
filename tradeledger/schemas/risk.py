"""Pydantic schemas for the risk API."""

from pydantic import BaseModel, Field, model_validator


class RiskCalculateRequest(BaseModel):
    account_value: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    buying_power: float | None = Field(default=None, ge=0)
    stop_price: float | None = Field(default=None, gt=0)
    target_price: float | None = Field(default=None, gt=0)
    risk_percent: float | None = Field(default=None, gt=0, le=100)
    current_exposure: float = Field(default=0.0, ge=0)  # market value already held

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.target_price is not None and self.stop_price is None:
            raise ValueError("target_price requires stop_price")
        return self


class PortfolioHeatRequest(BaseModel):
    stop_prices: dict[str, float] = Field(default_factory=dict)
