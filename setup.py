"""Setup configuration for board-jobs library."""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="board-jobs",
    version="0.1.0",
    author="Board Jobs Contributors",
    description="Persisted work queue, scheduler daemon and listing harvester for a job board",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiohttp>=3.8.0",
        "apscheduler>=3.10.0,<4",
        "asyncpg>=0.27.0",
        "psutil>=5.9.0",
        "pydantic>=2.0.0",
        "python-dateutil>=2.8.0",
    ],
    extras_require={
        "fastapi": [
            "fastapi>=0.110.0",
            "uvicorn[standard]>=0.20.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
            "fastapi>=0.110.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
            "flake8>=6.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "board-jobs-daemon=board_jobs.daemon_main:main",
        ],
    },
)
