"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="aelyra-chat",
    version="0.1.0",
    description="Conversational chat service with AI replies, searchable history and sharing",
    python_requires=">=3.9",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=24.1",
        "google-generativeai>=0.5",
        "google-api-core>=2.15",
        "prometheus-client>=0.19",
        "opentelemetry-instrumentation-fastapi>=0.44b0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
