"""Entry point for ``python -m ci_sandbox``.

Also the exec bridge target: a process spawned with an exec request in its
environment replaces itself with the hypervisor before the CLI is touched.
"""

from ci_sandbox.exec_bridge import maybe_exec

maybe_exec()

from ci_sandbox.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
