"""Setup configuration for the modtasks Discord bot."""

from setuptools import setup, find_packages

setup(
    name="modtasks",
    version="0.1.0",
    description="Deferred, monitored and cancellable moderation tasks for Discord",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "py-cord",
        "PyYAML",
        "aiosqlite",
        "prompt_toolkit",
        "python-dotenv",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "modtasks=modtasks.main:main",
        ],
    },
)
