from __future__ import annotations

import logging

import allure

from podutils.logs import transient_log_file

pytestmark = [
    allure.epic("Pod Utilities"),
    allure.feature("Logging"),
]


def test_transient_log_file_captures_records_and_is_removed() -> None:
    package_logger = logging.getLogger("podutils.sidecar.coordinator")
    previous_level = logging.getLogger("podutils").level
    logging.getLogger("podutils").setLevel(logging.INFO)
    try:
        with transient_log_file() as path:
            package_logger.info("waiting for %d markers", 3)
            assert "waiting for 3 markers" in path.read_text("utf-8")
    finally:
        logging.getLogger("podutils").setLevel(previous_level)

    assert not path.exists()
