from pathlib import Path

from setuptools import find_packages, setup

ROOT = Path(__file__).parent


def _read_version() -> str:
    init = ROOT / "crossmatrix" / "__init__.py"
    for line in init.read_text(encoding="utf-8").splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    return "0.0.0"


setup(
    name="crossmatrix",
    version=_read_version(),
    description="Cross-asset rate matrices built from a live spot ticker feed",
    packages=find_packages(include=["crossmatrix", "crossmatrix.*"]),
    python_requires=">=3.11",
    install_requires=[
        "aiohttp>=3.9",
        "SQLAlchemy[asyncio]>=2.0",
        "aiosqlite>=0.19",
        "pydantic>=2.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "crossmatrix=crossmatrix.cli:main",
        ],
    },
)
