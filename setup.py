from setuptools import find_packages, setup

setup(name="easy-fgr",
      version="1.0",
      description="Fast Global Registration of point clouds with FPFH features, built on Open3D data structures.",
      long_description=open("README.md").read(),
      long_description_content_type="text/markdown",
      packages=find_packages(exclude=["tests", "*.tests", "*.tests.*", "tests.*"]),
      python_requires=">=3.7.0",
      install_requires=["open3d>=0.14.1", "numpy>=1.19", "joblib>=1.0", "tqdm>=4.62.3", "tabulate>=0.8.9"],
      extras_require={"test": ["pytest>=6.2.3"]},
      package_data={"scripts": ["registration.ini"]},
      include_package_data=True,
      license='GPLv3',
      entry_points={"console_scripts": ["run = scripts.run_registration:main"]})
