"""Setup script for the planwright package."""

from setuptools import setup, find_packages

setup(
    name="planwright",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "prometheus-client>=0.19",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    description="planwright - coordination core for a multi-agent planning pipeline",
    author="planwright Team",
)
