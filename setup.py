from setuptools import setup, find_packages


setup(
    name="ax4archive",
    version="0.1",
    packages=find_packages(include=["ax4archive", "ax4archive.*"]),
    description="Password-protected, self-contained survey archives with validated restore.",
    author="ax4",
    python_requires=">=3.9",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "pydantic>=2.5",
    ],
)
