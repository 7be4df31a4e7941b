from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as f:
    requirements = [line for line in f.read().splitlines() if line and not line.startswith("#")]

setup(
    name="mvpmm",
    version="0.1.0",
    author="[Your Name/Organization]",
    author_email="[your_email@example.com]",
    description="Simulation, Bayesian fitting and validation of multivariate phylogenetic mixed models.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="[https://github.com/yourusername/mvpmm]", # Replace with your repo URL
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "dev": ["pytest>=6.0", "flake8", "black", "mypy"],
        "images": ["kaleido"], # static plot export (png, svg, pdf)
    },
    entry_points={
        "console_scripts": [
            "mvpmm=mvpmm.cli:main",
        ],
    },
    project_urls={
        "Bug Tracker": "[https://github.com/yourusername/mvpmm/issues]",
        "Source Code": "[https://github.com/yourusername/mvpmm]",
    },
)
