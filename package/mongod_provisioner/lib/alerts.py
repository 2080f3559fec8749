# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

# Alert delivery failures are reported and then dropped.

import smtplib
from email.message import EmailMessage
from typing import Optional

from .services import ServiceManager


class MailSink(object):
    def __init__(self, server: str, port: int, user: Optional[str], password: Optional[str], sender: str,
                 timeout: float = 10):
        self._server = server
        self._port = port
        self._user = user
        self._password = password
        self._sender = sender
        self._timeout = timeout

    def send(self, to: str, subject: str, body: str) -> bool:
        message = EmailMessage()
        message['From'] = self._sender
        message['To'] = to
        message['Subject'] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(self._server, self._port, timeout=self._timeout) as smtp:
                smtp.starttls()
                if self._user:
                    smtp.login(self._user, self._password or '')
                smtp.send_message(message)
        except (OSError, smtplib.SMTPException) as e:
            print(f'Failed to send alert "{subject}" to {to}: {e}')
            return False
        return True


def health_check(service_manager: ServiceManager, sink: Optional[MailSink], alert_email: Optional[str],
                 hostname: str, service_name: str = 'mongod') -> bool:
    """
    :return: True if the service is active
    """
    if service_manager.is_active(service_name):
        print(f'{service_name} is running on {hostname}')
        return True

    print(f'{service_name} is DOWN on {hostname}')
    if sink is not None and alert_email:
        sink.send(alert_email, 'MongoDB DOWN ALERT', f'MongoDB is DOWN on {hostname}')
    return False
