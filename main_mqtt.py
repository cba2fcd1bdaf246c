"""
Main entry point for the device gateway
"""
from gateway.server import GatewayServer


def main():
    server = GatewayServer()
    server.run_forever()

if __name__ == "__main__":
    main()
