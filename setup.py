from setuptools import setup, find_packages

# ------------------------------------------------------
# Read description/dependencies from file:

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt") as fp:
    install_requires = fp.read().strip().split("\n")

with open("requirements-test.txt") as fp:
    test_requires = fp.read().strip().split("\n")

# ------------------------------------------------------

setup(
    name="qgenpy",
    version="0.1.0",
    description="Genotype access, sparse LD matrices, clumping and Bayesian polygenic models in python",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        'Programming Language :: Python',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'Topic :: Scientific/Engineering',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12'
    ],
    package_dir={'': '.'},
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires=">=3.9",
    package_data={'qgenpy': ['config/*.ini']},
    install_requires=install_requires,
    extras_require={'test': test_requires},
    zip_safe=False
)
