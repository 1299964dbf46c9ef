from setuptools import setup, find_packages

setup(
    name="lessonguard-governor",
    version="0.1.0",
    packages=find_packages(include=["governor", "governor.*"]),
    python_requires=">=3.11",
    install_requires=[
        "httpx>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.3",
        "python-dotenv>=1.0",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
