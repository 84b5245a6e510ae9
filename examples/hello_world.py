"""Minimal demonite example: define a service, host it, and call it.

The service runs on a background thread and listens on its Unix socket
under ``$XDG_RUNTIME_DIR/demonite``; the client finds it by service name.

Run::

    python examples/hello_world.py
"""

from __future__ import annotations

import threading
from typing import Protocol

from demonite import RpcServer, UnixListener, connect


# 1. Define the service interface as a Protocol class.
#    Parameter and return annotations determine the wire schema.
class Greeter(Protocol):
    """A simple greeting service."""

    def greet(self, name: str) -> str:
        """Return a greeting for *name*."""
        ...

    def add(self, a: float, b: float) -> float:
        """Add two numbers."""
        ...


# 2. Implement the interface.
class GreeterImpl:
    """Concrete implementation of the Greeter service."""

    def greet(self, name: str) -> str:
        """Return a greeting for *name*."""
        return f"Hello, {name}!"

    def add(self, a: float, b: float) -> float:
        """Add two numbers."""
        return a + b


# 3. Start the listener, then call procedures through a typed proxy.
def main() -> None:
    """Run the example."""
    with UnixListener(RpcServer(Greeter, GreeterImpl())) as listener:
        threading.Thread(target=listener.serve_forever, daemon=True).start()
        svc = connect(Greeter)
        print(svc.greet(name="World"))  # Hello, World!
        print(svc.add(a=2.5, b=3.5))  # 6.0


if __name__ == "__main__":
    main()
