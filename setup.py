from setuptools import setup, find_packages
import os

def read_file(filename):
    """读取文件内容"""
    with open(os.path.join(os.path.dirname(__file__), filename), 'r', encoding='utf-8') as f:
        return f.read()

setup(
    name="compute-contribution-agent",
    version="1.0.0",
    author="Distributed Compute Team",
    author_email="compute@example.com",
    description="资源感知的后台计算贡献代理，在设备空闲且安全时执行经过校验的计算任务",
    long_description=read_file('README.md'),
    long_description_content_type="text/markdown",
    url="https://github.com/example/compute-contribution-agent",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "scripts"]),
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "compute-agent = compute_agent.cli:main",
            "cagent = compute_agent.cli:main",  # 简写命令
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Topic :: System :: Distributed Computing",
    ],
    python_requires=">=3.8",
    install_requires=[line for line in read_file('requirements.txt').splitlines() if line.strip()],
    extras_require={
        "test": ["pytest"],
    },
    project_urls={
        "Source": "https://github.com/example/compute-contribution-agent",
        "Tracker": "https://github.com/example/compute-contribution-agent/issues",
    },
)
