import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="cryptvol",
    version="0.1.0",
    description="Create, mount and unmount ad-hoc LUKS encrypted volumes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="GPLv3+",
    install_requires=["pexpect", "python-statemachine>=2.0,<3"],
    extras_require={"test": ["pytest", "pytest-mock"]},
    python_requires=">=3.10",
    packages=setuptools.find_packages(exclude=["docs", "tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Environment :: Console",
        "Operating System :: POSIX :: Linux",
    ],
    entry_points={"console_scripts": ["cryptvol = cryptvol.main:entrypoint"]},
)
