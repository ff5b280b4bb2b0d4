"""Setup script for memory_service package."""

from setuptools import setup, find_packages

setup(
    name="memory-service",
    version="0.1.0",
    description="Org-scoped conversational memory with LLM reconciliation and cursor pagination",
    packages=find_packages(include=["memory_service", "memory_service.*"]),
    python_requires=">=3.10",
    install_requires=[
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "aiosqlite>=0.19.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "structlog>=23.2.0",
        "openai>=1.40.0",
        "numpy>=1.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
)
