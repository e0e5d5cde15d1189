"""Multi-tissue log-domain intensity normalisation and bias field correction.

Subpackages
-----------
::

 intensity   -- Joint scale factor and bias field estimation
 utils       -- Logging
 workflows   -- Command line workflows
"""

__version__ = "0.1.0"
