#!/usr/bin/env python3
"""
Data Sync引擎的安装配置文件
"""

from setuptools import setup, find_packages
import os

# 读取README文件
def read_readme():
    readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_path):
        with open(readme_path, 'r', encoding='utf-8') as f:
            return f.read()
    return "Data Sync - 对象存储、关系数据库和缓存之间的数据同步引擎"

# 读取requirements文件
def read_requirements():
    requirements_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
    if os.path.exists(requirements_path):
        with open(requirements_path, 'r', encoding='utf-8') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    return [
        'pyyaml>=6.0',
        'colorlog>=6.0.0',
        'SQLAlchemy>=2.0.0',
        'psycopg2-binary>=2.9.0',
        'PyMySQL>=1.0.0',
        'boto3>=1.26.0'
    ]

setup(
    name="data-sync",
    version="1.0.0",
    author="Data Sync Contributors",
    author_email="",
    description="Pluggable data synchronization engine for object storage, relational databases and caches",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "Operating System :: POSIX",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: System :: Archiving :: Mirroring",
        "Topic :: System :: Systems Administration",
        "Topic :: Utilities",
    ],
    python_requires=">=3.8",
    install_requires=read_requirements(),
    extras_require={
        "dev": [
            "pytest>=6.0.0",
            "pytest-cov>=2.10.0",
        ],
    },
    include_package_data=True,
    package_data={
        "data_sync": [
            "*.yaml",
            "*.yml",
        ],
    },
    keywords=[
        "sync",
        "synchronization",
        "migration",
        "replication",
        "object-storage",
        "s3",
        "minio",
        "rclone",
        "postgres",
        "mysql",
        "redis",
        "data-transfer",
    ],
    zip_safe=False,
)
