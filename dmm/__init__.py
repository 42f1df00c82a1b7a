"""Dynamic Microservice Manager (DMM).

Single-node manager that turns a submitted source file plus a dependency list
into a running container, and fronts every deployed service with one gateway:
 - build pipeline (manifest + recipe + image build)
 - container lifecycle control (start / stop / restart / remove)
 - path-routing reverse proxy under /services/{serviceName}
 - durable service registry reconciled against live container state
"""

__version__ = "0.1.0"
