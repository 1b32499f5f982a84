from setuptools import setup, find_packages

setup(
    name="dicomhang",
    version="0.1.0",
    description="A hanging protocol engine that lays out DICOM studies into viewports using weighted matching rules",
    author="Ashley Stewart",
    packages=find_packages(include=["dicomhang", "dicomhang.*"]),
    package_data={
        "dicomhang.protocols": ["*.json"],
    },
    entry_points={
        "console_scripts": [
            "dicomhang=dicomhang.cli.main:main",
        ]
    },
    install_requires=[
        "pydicom==3.0.1",
        "pydantic>=2",
        "pandas",
        "numpy",
        "tabulate",
        "pytest",
    ],
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    keywords="DICOM hanging protocol viewer layout medical imaging",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
