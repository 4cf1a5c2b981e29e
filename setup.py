from setuptools import setup, find_packages

setup(
    name="volumescaler",
    version="0.1.0",
    description="Node-local controller that expands PersistentVolumeClaims as they fill up",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "kubernetes>=24.2.0,<29",
        "urllib3>=1.26.0",
        "psutil>=5.9.0",
        "prometheus-client>=0.16.0",
        "flask>=2.2.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "volumescaler=volumescaler.scripts.controller:main",
        ],
    },
    python_requires=">=3.9",
)
