from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    readme = f.read()

setup(
    name="kvstore-benchmark",
    version="0.1.0",
    description="Matrix driver for key-value store benchmarks: expand, filter, and run isolated benchmark processes",
    long_description=readme,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(include=["kvstore_benchmark", "kvstore_benchmark.*"]),
    package_data={"kvstore_benchmark": ["config.yaml"]},
    include_package_data=True,
    python_requires=">=3.8",
    install_requires=[
        "pyyaml",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["kv_benchmark = kvstore_benchmark.cli:main"]
    },
)
