from setuptools import setup, find_packages

setup(
    name="connectome-loom",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "python-socketio",
        "aiohttp",
        "python-dotenv",
        "pydantic",
        "pydantic-settings",
        "aiofiles",
        "aiosqlite",
        "tiktoken",
        "opentelemetry-api",
        "opentelemetry-sdk",
        "opentelemetry-exporter-otlp-proto-http",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-mock",
            "pytest-asyncio",
            "hypothesis",
        ],
    },
    python_requires=">=3.10",
)
