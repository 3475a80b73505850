import os
from setuptools import setup, find_packages
from setuptools.command.build_py import build_py as _build

CLASSIFIERS = [
    'Operating System :: POSIX',
    'Operating System :: MacOS :: MacOS X',
    'Intended Audience :: Science/Research',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'Topic :: System :: Archiving'
]

def get_version():
    out = "dev"
    pkgdir = os.environ.get('PACKAGE_DIR', os.path.dirname(os.path.abspath(__file__)))
    versfile = os.path.join(pkgdir, 'VERSION')
    if os.path.exists(versfile):
        with open(versfile) as fd:
            parts = fd.readline().split()
        if len(parts) > 0:
            out = parts[-1]
    else:
        out = "(unknown)"
    return out

def write_version_mod(version):
    versmodf = os.path.join('python', 'dams', "version.py")
    print("setting version for dams")
    with open(versmodf, 'w') as fd:
        fd.write('"""')
        fd.write("""
An identification of the system version.  Note that this module file gets 
(over-) written by the build process.  
""")
        fd.write('"""\n\n')
        fd.write('__version__ = "')
        fd.write(version)
        fd.write('"\n')

class build(_build):

    def run(self):
        write_version_mod(get_version())
        _build.run(self)

setup(name='dams',
      version=get_version(),
      description="dams: FileSet ingestion and attachment for a digital asset management system",
      package_dir={'': 'python'},
      packages=find_packages('python', include=['dams', 'dams.*']),
      python_requires='>=3.8',
      install_requires=[
          "PyYAML",
          "requests",
          "filelock",
          "pymongo",
          "websockets",
          "psutil"
      ],
      extras_require={
          "test": [ "pytest" ]
      },
      cmdclass={'build_py': build},
      classifiers=CLASSIFIERS,
      zip_safe=False
)
