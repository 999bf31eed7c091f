"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="resumable-chat",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "structlog>=24.1",
        "google-generativeai>=0.7",
        "httpx>=0.27",
        "redis>=5.0.1",
        "prometheus-client>=0.20",
        "opentelemetry-api>=1.24",
        "opentelemetry-sdk>=1.24",
        "opentelemetry-instrumentation-fastapi>=0.45b0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
            "fakeredis>=2.20",
        ],
    },
)
