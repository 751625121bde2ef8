"""Setup script for the Order Payments service."""

from setuptools import setup, find_packages

setup(
    name="order-payments",
    version="1.0.0",
    description="Order payment reconciliation for multi-channel e-commerce checkout",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "order-payments-api=order_payments.api.main:run",
            "order-payments-poll-worker=order_payments.workers.poll_worker:main",
            "order-payments-dispatch-worker=order_payments.workers.dispatch_worker:main",
            "order-payments-retention-worker=order_payments.workers.retention_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
