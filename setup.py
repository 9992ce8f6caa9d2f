from setuptools import setup, find_packages

setup(
    name="iterqa_agent",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    package_data={"iterqa_agent": ["static/*.j2"]},
    install_requires=[
        "pydantic>=2",
        "openai",
        "httpx",
        "python-dotenv",
        "pyyaml",
        "jinja2"
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    scripts=["iterqa-agent.py"],
    python_requires='>=3.10',
)
