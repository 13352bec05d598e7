"""Build PeerCall package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peercall",
    version="0.1.0",
    author="PeerCall Developers",
    description="Signaling relay and call state machine for peer-to-peer calls",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests*", "testing*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=[
        "click",
        "pydantic>=2",
        "tomli; python_version<'3.11'",
        "typing-extensions; python_version<'3.11'",
        "websockets>=14",
    ],
    extras_require={
        "rtc": [
            "aiortc>=1.3.2",
            "pyee",
        ],
        "dev": [
            "aiortc>=1.3.2",
            "cryptography",
            "pyee",
            "pytest",
            "pytest-asyncio>=0.23.2",
            "pytest-timeout",
            "uvloop; platform_system!='Windows'",
        ],
    },
    entry_points={
        "console_scripts": [
            "peercall-relay=peercall.relay.run:cli",
        ],
    },
)
