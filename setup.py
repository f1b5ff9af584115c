from setuptools import setup, find_packages

VERSION = '0.1.0'
DESCRIPTION = 'IceFlow'
LONG_DESCRIPTION = 'Incremental device session pipeline over parquet tables in S3'

# Setting up
setup(
    name="iceflow",
    version=VERSION,
    author="Dan Goodman",
    author_email="dan@danthegoodman.com",
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    packages=find_packages(exclude=["examples", "examples.*"]),
    python_requires=">=3.10",
    install_requires=[
        "boto3>=1.26.151",
        "botocore>=1.29.151",
        "duckdb>=1.0.0",
        "pyarrow>=16.1.0",
        "python-dotenv>=1.0.0"
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "moto[s3]>=5.0"
        ]
    },
    keywords=['olap', 'iceflow', 'data lake', 'parquet', 'sessions', 'streaming', 'analytics'],
    classifiers=[]
)
