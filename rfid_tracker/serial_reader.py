import logging
import threading
import time

import serial
import serial.tools.list_ports

from rfid_tracker.constants import BAUD_RATE, PORT_KEYWORDS

logger = logging.getLogger(__name__)


def normalize_uid(uid):
    uid = "".join(ch for ch in uid if ch.isprintable())
    return uid.strip().upper().replace(" ", "")


def auto_detect_port():
    ports = list(serial.tools.list_ports.comports())
    for port in ports:
        if any(keyword in (port.description or "") for keyword in PORT_KEYWORDS):
            return port.device

    if ports:
        return ports[0].device

    return None


class CardReader:
    """Reads one card UID per line from a serial RFID reader on a daemon thread.

    ``on_card`` is called from the reader thread with the normalized UID;
    ``on_status`` with True/False when the port opens or goes away.
    """

    def __init__(self, selected_port, on_card_callback, on_status=None,
                 baud_rate=BAUD_RATE, serial_factory=serial.Serial):
        self.selected_port = selected_port
        self.on_card_callback = on_card_callback
        self.on_status = on_status
        self.baud_rate = baud_rate
        self.serial_factory = serial_factory

        self.card_mode_running = False
        self.card_thread = None
        self.ser = None

    @property
    def is_connected(self):
        return bool(self.ser and self.ser.is_open)

    def start(self):
        if self.card_mode_running:
            return

        self.card_mode_running = True
        self.card_thread = threading.Thread(
            target=self._card_mode_worker,
            name="card-reader",
            daemon=True
        )
        self.card_thread.start()

    def stop(self, timeout=2.0):
        # the worker owns the port and closes it on its way out
        self.card_mode_running = False
        thread = self.card_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Reader thread on %s did not stop within %.1fs", self.selected_port, timeout)
                return
        if self.ser and self.ser.is_open:
            self.ser.close()

    def send_command(self, command):
        if not self.is_connected:
            return False
        try:
            self.ser.write(f"{command}\n".encode("utf-8"))
            return True
        except serial.SerialException as e:
            logger.warning("Failed to write %s to %s: %s", command, self.selected_port, e)
            return False

    def _report_status(self, connected):
        if self.on_status:
            self.on_status(connected)

    def _card_mode_worker(self):
        try:
            self.ser = self.serial_factory(self.selected_port, self.baud_rate, timeout=1)
        except (serial.SerialException, OSError) as e:
            logger.error("Reader not connected on %s: %s", self.selected_port, e)
            self.card_mode_running = False
            self._report_status(False)
            return

        logger.info("Reader connected on %s", self.selected_port)
        self._report_status(True)

        while self.card_mode_running:
            try:
                if self.ser.in_waiting:
                    uid_line = self.ser.readline().decode("utf-8", errors="ignore").strip()
                    if uid_line:
                        uid = normalize_uid(uid_line)
                        logger.debug("Scanned UID: %s", uid)
                        self.on_card_callback(uid)
                time.sleep(0.1)
            except (serial.SerialException, OSError) as e:
                logger.error("Reader on %s disconnected: %s", self.selected_port, e)
                break

        if self.ser and self.ser.is_open:
            self.ser.close()
        self.card_mode_running = False
        self._report_status(False)
