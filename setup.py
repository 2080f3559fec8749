import setuptools


with open("README.md") as fp:
    long_description = fp.read()


setuptools.setup(
    name="mongod_provisioner",
    version="0.0.1",

    description="Reconciles mongod.conf and bootstraps MongoDB replica set nodes",
    long_description=long_description,
    long_description_content_type="text/markdown",

    package_dir={"": "package"},
    packages=setuptools.find_packages(where="package"),

    install_requires=[
        "boto3>=1.26",
        "psutil>=5.9",
        "pymongo>=4.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },

    entry_points={
        "console_scripts": [
            "mongod-provisioner=mongod_provisioner.app:main",
        ],
    },

    python_requires=">=3.7",
)
