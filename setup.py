from setuptools import setup

setup(
    name="kvgpu",
    version="0.9.0",
    packages=["kvgpu.cli", "kvgpu.lib"],
    install_requires=[
        "Click",
        "PyYAML",
        "lxml",
        "colorama",
        "psutil",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "kvgpu = kvgpu.cli.cli:cli",
        ],
    },
)
