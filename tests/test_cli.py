from unittest.mock import patch

import pytest

from appointment_scheduler import cli


@patch("appointment_scheduler.cli.setup_logging")
@patch("appointment_scheduler.cli.run.book")
def test_main_calls_book(mock_book, mock_logging):
    mock_book.return_value = 0

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["-v", "book", "p1", "d1", "2026-01-20T14:00", "--notes", "Checkup"])

    assert excinfo.value.code == 0
    mock_logging.assert_called_once_with(True)
    mock_book.assert_called_once_with("p1", "d1", "2026-01-20T14:00", "Checkup")


@patch("appointment_scheduler.cli.setup_logging")
@patch("appointment_scheduler.cli.run.respond")
def test_main_exit_code_from_command(mock_respond, mock_logging):
    mock_respond.return_value = 1

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["respond", "A1", "--reject"])

    assert excinfo.value.code == 1
    mock_respond.assert_called_once_with("A1", False)


@patch("appointment_scheduler.cli.run.complete")
def test_dispatch_complete_collects_items(mock_complete):
    args = cli.parse_arguments(["complete", "A1", "--item", "amox=2", "--item", "ibu=1"])
    cli.dispatch(args)
    mock_complete.assert_called_once_with("A1", ["amox=2", "ibu=1"], None)


@patch("appointment_scheduler.cli.run.show_reservations")
def test_dispatch_list(mock_show):
    cli.dispatch(cli.parse_arguments(["list", "--status", "pending"]))
    mock_show.assert_called_once_with(requester_id=None, provider_id=None, status="pending")


@patch("appointment_scheduler.cli.run.block")
def test_dispatch_block(mock_block):
    cli.dispatch(cli.parse_arguments(["block", "d1", "2026-01-20", "12:00", "13:00", "--label", "Lunch"]))
    mock_block.assert_called_once_with("d1", "2026-01-20", "12:00", "13:00", "Lunch")


def test_respond_requires_a_choice():
    with pytest.raises(SystemExit):
        cli.parse_arguments(["respond", "A1"])
