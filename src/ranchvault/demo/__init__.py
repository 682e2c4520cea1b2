"""
Demo data generator for ranchvault.

Provides a sample ranch for trying export and restore without real data.

Usage:
    from ranchvault.demo import generate_demo_data

    summary = generate_demo_data(record_store, blob_store)

    # Then export it
    ranchvault export <ranch_id>
"""

from ranchvault.demo.generator import (
    DEMO_RANCH_NAME,
    DemoConfig,
    DemoGenerator,
    DemoRanchExistsError,
    generate_demo_data,
)

__all__ = [
    "DEMO_RANCH_NAME",
    "DemoConfig",
    "DemoGenerator",
    "DemoRanchExistsError",
    "generate_demo_data",
]
