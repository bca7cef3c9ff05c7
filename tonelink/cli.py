# cli.py
#
# Terminal front end: type a line to broadcast it, decoded lines from other
# machines are printed as they arrive.

import logging
import threading
import time

import click

from .errors import ToneLinkError
from .host import AudioHost, list_devices
from .modem import DataRxTx
from .protocol import DEFAULT_TX_PROTOCOL, TX_PROTOCOLS, TxMode

POLL_INTERVAL = 0.001  # Seconds between ticks


def input_loop(engine, lock, stop_flag):
    """Reads lines from stdin and starts a transmission for each one."""
    previous = ""
    while not stop_flag.is_set():
        try:
            text = input("Enter text: ")
        except EOFError:
            stop_flag.set()
            break
        if not text:
            print("Re-sending ...")
            text = previous
        else:
            print("Sending ...")
        payload = text.encode("utf-8")
        with lock:
            engine.init(len(payload), payload)
        previous = text


def poll_loop(host, lock, stop_flag):
    """Ticks the host until stopped and prints every new payload."""
    last_rx = b""
    while not stop_flag.is_set():
        time.sleep(POLL_INTERVAL)
        with lock:
            host.update()
            rx = host.engine.get_rx_data()
        if rx and rx is not last_rx:
            last_rx = rx
            print(f"\nReceived: {rx.decode('utf-8', errors='replace')}")


@click.command()
@click.option("-c", "--capture", "capture_device", type=int, default=None,
              help="Capture device index (default: system default)")
@click.option("-p", "--playback", "playback_device", type=int, default=None,
              help="Playback device index (default: system default)")
@click.option("-t", "--protocol", type=click.IntRange(0, len(TX_PROTOCOLS) - 1),
              default=DEFAULT_TX_PROTOCOL, show_default=True,
              help="0: Normal, 1: Fast, 2: Fastest, 3: Ultrasonic")
@click.option("--fixed", is_flag=True, help="Use fixed-length transmissions")
@click.option("--list-devices", "show_devices", is_flag=True, help="Print the audio devices and exit")
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
def main(capture_device, playback_device, protocol, fixed, show_devices, verbose):
    """Send and receive text through the speaker and microphone."""
    if show_devices:
        try:
            click.echo(list_devices())
        except ToneLinkError as e:
            click.echo(f"Error: {e}", err=True)
            raise SystemExit(1)
        return

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    name, params = TX_PROTOCOLS[protocol]
    engine = DataRxTx()
    engine.set_tx_mode(TxMode.FIXED_LENGTH if fixed else TxMode.VARIABLE_LENGTH)
    engine.set_parameters(*params)
    click.echo(f"Using '{name}' Tx protocol")

    host = AudioHost(engine, capture_device=capture_device, playback_device=playback_device)
    try:
        host.open()
    except ToneLinkError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    lock = threading.Lock()
    stop_flag = threading.Event()
    reader = threading.Thread(target=input_loop, args=(engine, lock, stop_flag), daemon=True)
    reader.start()
    try:
        poll_loop(host, lock, stop_flag)
    except KeyboardInterrupt:
        print("\nStopping.")
    finally:
        stop_flag.set()
        host.close()
    print("Goodbye!")


if __name__ == "__main__":
    main()
