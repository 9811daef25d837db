from setuptools import setup, find_packages


def read_requirements():
    try:
        with open("requirements.txt", "r") as f:
            return [line.strip() for line in f if line.strip() and not line.startswith("#")]
    except FileNotFoundError:
        return [
            "redis>=5.0.0",
            "sqlalchemy[asyncio]>=2.0",
            "asyncpg>=0.29",
            "fastapi>=0.110",
            "uvicorn>=0.29",
            "pydantic>=2.0",
            "apscheduler>=3.10,<4",
            "prometheus-client>=0.20",
            "sentry-sdk>=2.0",
            "python-dotenv>=1.0",
        ]


setup(
    name="video-engagement-counters",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    py_modules=[
        "api_server",
        "cache_keys",
        "config",
        "counter_sync",
        "database",
        "engagement",
        "errors",
        "job_logger",
        "like_store",
        "models",
        "page_cache",
    ],
    install_requires=read_requirements(),
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    python_requires=">=3.9",
)
