import setuptools

# Read the long description from README.md
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setuptools.setup(
    name="npyfile",
    version="0.1.0",
    description="A safe reader and writer for NumPy .npy array files with zero-copy memory mapped loading",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: Software Development :: Libraries",
        "Topic :: Scientific/Engineering",
    ],
    package_dir={"": "lib"},
    py_modules=["npyfile"],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.22.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
