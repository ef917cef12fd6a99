from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "Lazy Cutplan - Cut-list compilation and quality-targeted encode planning"

setup(
    name="lazy-cutplan",
    version="1.0.0",
    author="Rallade",
    author_email="rallade@hotmail.com",
    description="Compile frame-accurate cut lists into ffmpeg graphs and plan encodes against a quality target",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["lazy_cutplan", "lazy_cutplan.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Video :: Conversion",
    ],
    python_requires=">=3.9",
    install_requires=[
        "tqdm>=4.0.0",
        "psutil>=5.0.0",  # For available CPU detection
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
        ],
    },
    entry_points={
        "console_scripts": [
            "lazy-cutplan=lazy_cutplan.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
