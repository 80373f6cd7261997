"""Setup script for the top-up fulfillment pipeline."""

from setuptools import setup, find_packages

setup(
    name="topup-fulfillment",
    version="1.0.0",
    description="Mobile top-up delivery with bounded retries and recurring schedules",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["topup_fulfillment", "topup_fulfillment.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "fakeredis>=2.21.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "topup-api=topup_fulfillment.api.main:main",
            "topup-worker=topup_fulfillment.workers.topup_worker:main",
            "recurring-worker=topup_fulfillment.workers.recurring_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
