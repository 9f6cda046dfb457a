"""Package computation for carrier shipments."""

import math

from orderflow.core.config import Settings
from orderflow.services.shipping.carriers.base import Package


def calculate_packages(item_count: int, settings: Settings) -> list[Package]:
    """
    Split a number of items into fixed-size packages.

    Each package holds up to ``package_item_capacity`` items; weight is
    linear in the number of items it holds. At least one package is
    returned, with zero weight when there are no items.

    Args:
        item_count: Total item quantity across the shipment
        settings: Settings carrying the package constants

    Returns:
        Ordered list of packages

    Raises:
        ValueError: If item_count is negative
    """
    if item_count < 0:
        raise ValueError(f"Item count cannot be negative: {item_count}")

    capacity = settings.package_item_capacity
    package_count = max(1, math.ceil(item_count / capacity))

    packages = []
    remaining = item_count
    for _ in range(package_count):
        items_in_package = min(capacity, remaining)
        remaining -= items_in_package
        packages.append(
            Package(
                weight=items_in_package * settings.package_item_weight_grams,
                length=settings.package_length_cm,
                width=settings.package_width_cm,
                height=settings.package_height_cm,
            )
        )
    return packages
