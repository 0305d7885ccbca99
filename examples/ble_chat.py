#!/usr/bin/env python3
"""
BLE Chat

Interactive host for a BLEMessenger interface on a Linux/BlueZ machine.
Loads (or creates) the configuration in ~/.blemessenger/config and prints
every interface event to the terminal.

Usage:
    python ble_chat.py [configdir]

Commands:
    role <idle|central|peripheral>  - Switch role
    scan                            - Start scanning (central)
    stop                            - Stop scanning and advertising
    peers                           - List discovered and connected peers
    connect <msisdn|address>        - Connect to a peer (central)
    advertise                       - Start advertising (peripheral)
    send <text>                     - Send a text message
    id <msisdn>                     - Write an MSISDN to connected peers (central)
    image <path>                    - Send an image file
    log                             - Show recent log lines
    quit                            - Shut down and exit
"""

import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from BLEMessenger import BLEEventListener, BLEInterface


class ConsoleListener(BLEEventListener):
    """Prints interface events."""

    def on_role_changed(self, role):
        print(f"* role: {role}")

    def on_scanning_state_changed(self, scanning):
        print(f"* scanning: {'on' if scanning else 'off'}")

    def on_advertising_state_changed(self, advertising):
        print(f"* advertising: {'on' if advertising else 'off'}")

    def on_discovered_peers_updated(self, peers):
        for peer in peers:
            print(f"  found {peer.advertised_name or '?'} [{peer.key}] rssi={peer.rssi}")

    def on_connected_peers_updated(self, peers):
        print(f"* peers: {', '.join(p.display_name for p in peers) or 'none'}")

    def on_connected_clients_updated(self, clients):
        print(f"* clients: {', '.join(c.display_name for c in clients) or 'none'}")

    def on_message_received(self, text, sender):
        print(f"<{sender}> {text}")

    def on_image_received(self, image_bytes, sender, location):
        print(f"<{sender}> image, {len(image_bytes)} bytes -> {location}")

    def on_failure(self, failure):
        print(f"! {type(failure).__name__}: {failure}")


def show_help():
    print(__doc__.split("Commands:")[1])


def handle(interface, line):
    """Run one command line. Returns False to exit."""
    command, _, argument = line.strip().partition(" ")
    command = command.lower()

    if command in ("quit", "exit"):
        return False
    elif command == "role":
        interface.set_role(argument)
    elif command == "scan":
        interface.start_scan()
    elif command == "stop":
        interface.stop_scan()
        interface.stop_advertising()
    elif command == "peers":
        for peer in interface.discovered_peers:
            print(f"  discovered {peer.advertised_name or '?'} [{peer.key}]")
        for peer in interface.connected_peers:
            print(f"  connected  {peer.display_name} ready={peer.ready}")
        for client in interface.connected_clients:
            print(f"  client     {client.display_name}")
    elif command == "connect":
        interface.connect(argument)
    elif command == "advertise":
        interface.start_advertising()
    elif command == "send":
        interface.send_message(argument)
    elif command == "id":
        interface.send_message(argument, as_identifier=True)
    elif command == "image":
        try:
            with open(os.path.expanduser(argument), "rb") as f:
                image_bytes = f.read()
        except OSError as e:
            print(f"! cannot read {argument}: {e}")
            return True
        interface.send_image(image_bytes)
    elif command == "log":
        for entry in interface.recent_log[-20:]:
            print(f"  {entry}")
    elif command in ("help", "?"):
        show_help()
    elif command:
        print(f"Unknown command: {command}")
    return True


def main():
    """Main entry point"""
    configdir = sys.argv[1] if len(sys.argv) > 1 else None

    interface = BLEInterface.from_config_dir(configdir)
    interface.add_listener(ConsoleListener())
    if not interface.start():
        print("Could not start the Bluetooth driver")
        sys.exit(1)

    print(f"{interface} ready, type 'help' for commands")
    try:
        while True:
            try:
                line = input("> ")
            except EOFError:
                break
            if not handle(interface, line):
                break
    except KeyboardInterrupt:
        print()
    finally:
        interface.shutdown()


if __name__ == "__main__":
    main()
