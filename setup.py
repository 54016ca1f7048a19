from setuptools import setup, find_packages

setup(
    name="carelink-gateway",
    version="1.0.0",
    packages=find_packages(include=["carelink", "carelink.*"]),
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "python-dotenv",
        "httpx",
        "python-jose[cryptography]",
        "bcrypt",
    ],
    extras_require={
        "test": [
            "pytest",
            "anyio",
            "cryptography",
        ],
    },
)
