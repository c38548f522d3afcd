from setuptools import setup, find_packages

setup(
    name='tidysdm',
    version='0.1.0',
    description='Species distribution models from presence-only records with spatial resampling and ensembles',
    packages=find_packages(include=['tidysdm', 'tidysdm.*']),
    python_requires='>=3.11',
    install_requires=[
        'numpy',
        'pandas',
        'scipy',
        'scikit-learn>=1.2',
        'geopandas',
        'shapely>=2.0',
        'pyproj',
        'xarray',
        'rioxarray',
        'rasterio',
        'elapid>=1.0',
        'joblib',
        'tqdm',
        'pydantic>=2',
        'pyyaml',
        'pyhere',
        'typer',
        'typing_extensions',
        'mlflow',
        'pyarrow',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'tidysdm=tidysdm.cli:app',
        ],
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Science/Research',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
)
