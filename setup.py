"""Setup script for ScreenSync."""

from setuptools import setup, find_packages

setup(
    name="screen-sync",
    version="1.0.0",
    description="Relays new screenshots from cloud storage or a synced folder to a consumer app",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    author="ScreenSync",
    python_requires=">=3.13",
    packages=find_packages(include=["screen_sync", "screen_sync.*"]),
    install_requires=[
        "watchdog>=3.0.0",
        "Pillow>=10.0.0",
        "websockets>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "screen-sync=screen_sync.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: End Users/Desktop",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Topic :: Utilities",
    ],
)
