from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fp:
    long_description = fp.read()

setup(
    name="protolauncher",
    version="1.0.0",
    description="ProtoLauncher is a module that provides the core of a Minecraft launcher: version resolution, "
                "authentication, artifact fetching and launch assembly.",
    author="ProtoLauncher contributors",
    packages=["protolauncher"],
    url="https://github.com/protolauncher/protolauncher",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="GPL-3.0",
    python_requires=">=3.8",
    extras_require={
        "certs": ["certifi"],
        "test": ["pytest"],
    }
)
