"""
Fare Estimation  (Strategy Pattern)
===================================

Formula
-------
Fare = (Base_Fare + Distance_km x Rate_Per_KM) x Multiplier

* ``StandardPricing`` -- multiplier 1.0.
* ``VehiclePricing``  -- multiplier by vehicle class (Premium 1.5, XL 1.3).

Used for driver earnings on ride offers and completed-ride summaries.

Complexity: O(1) per fare.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .enums import VehicleType


# ── Strategy hierarchy ────────────────────────────────────────────────


class PricingStrategy(ABC):
    @abstractmethod
    def calculate(
        self, distance_km: float, base_fare: float, rate_per_km: float
    ) -> float: ...


class StandardPricing(PricingStrategy):
    def calculate(
        self, distance_km: float, base_fare: float, rate_per_km: float
    ) -> float:
        return round(base_fare + distance_km * rate_per_km, 2)


class VehiclePricing(PricingStrategy):
    MULTIPLIERS = {
        VehicleType.STANDARD: 1.0,
        VehicleType.PREMIUM: 1.5,
        VehicleType.XL: 1.3,
    }

    def __init__(self, vehicle_type: VehicleType = VehicleType.STANDARD):
        self.multiplier = self.MULTIPLIERS.get(vehicle_type, 1.0)

    def calculate(
        self, distance_km: float, base_fare: float, rate_per_km: float
    ) -> float:
        return round((base_fare + distance_km * rate_per_km) * self.multiplier, 2)


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """High-level API used by the dispatcher and driver sessions."""

    def __init__(self, base_fare: float = 2.0, rate_per_km: float = 1.5):
        self.base_fare = base_fare
        self.rate_per_km = rate_per_km

    def estimate_fare(
        self, distance_m: float, vehicle_type: VehicleType = VehicleType.STANDARD
    ) -> float:
        strategy: PricingStrategy = (
            StandardPricing()
            if vehicle_type is VehicleType.STANDARD
            else VehiclePricing(vehicle_type)
        )
        return strategy.calculate(distance_m / 1000.0, self.base_fare, self.rate_per_km)
