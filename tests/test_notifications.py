#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from expiry_audit import notifications
from expiry_audit.notifications import (
    send_email, send_new_accounts_alert, send_failure_notification, MAX_LISTED_ACCOUNTS
)
from expiry_audit.models import AccountRecord


class TestNotifications(unittest.TestCase):
    """Test cases for notification helpers."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_new_accounts': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'audit@example.com',
            'smtp_password': 'password123',
            'email_from': 'audit@example.com',
            'email_to': ['admin1@example.com', 'admin2@example.com']
        }

    @patch('expiry_audit.notifications.smtplib.SMTP')
    def test_send_email(self, mock_smtp):
        server = mock_smtp.return_value

        self.assertTrue(send_email('Subject', 'Body', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('audit@example.com', 'password123')
        server.sendmail.assert_called_once()
        self.assertEqual(server.sendmail.call_args[0][1], ['admin1@example.com', 'admin2@example.com'])
        server.quit.assert_called_once()

    @patch('expiry_audit.notifications.smtplib.SMTP_SSL')
    def test_send_email_implicit_tls(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465

        self.assertTrue(send_email('Subject', 'Body', self.config))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    @patch('expiry_audit.notifications.smtplib.SMTP')
    def test_disabled(self, mock_smtp):
        self.config['enable_email'] = False

        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    @patch('expiry_audit.notifications.smtplib.SMTP')
    def test_missing_server(self, mock_smtp):
        del self.config['smtp_server']

        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    @patch('expiry_audit.notifications.smtplib.SMTP')
    def test_smtp_failure_returns_false(self, mock_smtp):
        mock_smtp.return_value.sendmail.side_effect = smtplib.SMTPException("rejected")

        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.return_value.quit.assert_called_once()

    @patch('expiry_audit.notifications.send_email', return_value=True)
    def test_new_accounts_alert(self, mock_send):
        accounts = [AccountRecord('bob@x.com', display_name='Bob', sam_account_name='bob')]

        self.assertTrue(send_new_accounts_alert(accounts, self.config, host='AUDIT01'))

        subject, body, _ = mock_send.call_args[0]
        self.assertIn('1 new account', subject)
        self.assertIn('user=bob@x.com', body)
        self.assertIn('Host: AUDIT01', body)

    @patch('expiry_audit.notifications.send_email', return_value=True)
    def test_new_accounts_alert_truncates_list(self, mock_send):
        accounts = [AccountRecord(f'user{i}@x.com') for i in range(MAX_LISTED_ACCOUNTS + 5)]

        send_new_accounts_alert(accounts, self.config)

        body = mock_send.call_args[0][1]
        self.assertIn('... and 5 more', body)

    @patch('expiry_audit.notifications.send_email')
    def test_new_accounts_alert_skipped(self, mock_send):
        self.assertFalse(send_new_accounts_alert([], self.config))

        self.config['email_on_new_accounts'] = False
        self.assertFalse(send_new_accounts_alert([AccountRecord('a@x.com')], self.config))
        mock_send.assert_not_called()

    @patch('expiry_audit.notifications.send_email', return_value=True)
    def test_failure_notification(self, mock_send):
        self.assertTrue(send_failure_notification('Directory Query Failed', 'timeout', self.config,
                                                  {'Mode': 'check'}))

        subject, body, _ = mock_send.call_args[0]
        self.assertIn('Directory Query Failed', subject)
        self.assertIn('Error Message: timeout', body)
        self.assertIn('Mode: check', body)

    @patch('expiry_audit.notifications.send_email')
    def test_failure_notification_disabled(self, mock_send):
        self.config['email_on_failure'] = False

        self.assertFalse(send_failure_notification('Title', 'msg', self.config))
        mock_send.assert_not_called()

    @patch('expiry_audit.notifications.send_email', return_value=True)
    def test_send_test_notification(self, mock_send):
        self.assertTrue(notifications.send_test_notification(self.config))
        self.assertIn('smtp.example.com', mock_send.call_args[0][1])


if __name__ == '__main__':
    unittest.main()
