from setuptools import setup, find_packages

setup(
    name="oracle-agent-network",
    version="0.1.0",
    packages=find_packages(),
    python_requires=">=3.10",
    install_requires=[
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "eth-abi>=5.0.0",
        "eth-utils>=4.0.0",
        "python-dotenv>=1.0.0",
        "aiohttp>=3.9.0",
        "pyyaml>=6.0",
        "langchain-core>=0.3.0",
        "langchain-google-genai>=2.0.0",
        "langgraph>=0.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "oracle-agents=oracle_agents.__main__:main",
        ],
    },
)
