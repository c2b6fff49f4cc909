import logging
import smtplib
import uuid

import requests
from flask import current_app, render_template_string
from flask_mail import Message

from notesapp import mail

logger = logging.getLogger(__name__)

RESEND_API_URL = 'https://api.resend.com/emails'

otp_email_template = """<!DOCTYPE html>
<html lang="en">
<body style="font-family: Arial, sans-serif;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="text-align: center;">Verify Your Email</h2>
        <p style="text-align: center;">Please use the following code to verify your email address:</p>
        <div style="text-align: center; margin: 30px 0;">
            <span style="padding: 15px 25px; font-size: 24px; letter-spacing: 3px;">{{ otp }}</span>
        </div>
        <p style="text-align: center; font-size: 14px;">
            This code will expire in {{ ttl_minutes }} minutes. If you didn't request this, please ignore this email.
        </p>
        <p style="text-align: center; font-size: 12px;">{{ app_name }}</p>
    </div>
</body>
</html>
"""

welcome_email_template = """<!DOCTYPE html>
<html lang="en">
<body style="font-family: Arial, sans-serif;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="text-align: center;">Welcome to {{ app_name }}!</h2>
        <p>Hi {{ name }},</p>
        <p>Your account has been verified. You can now create, pin and tag your notes.</p>
        {% if frontend_url %}
        <p style="text-align: center;"><a href="{{ frontend_url }}">Start Taking Notes</a></p>
        {% endif %}
    </div>
</body>
</html>
"""


class MailDeliveryError(Exception):
    pass


class SmtpChannel:
    name = 'smtp'

    def __init__(self, sender):
        self.sender = sender

    def send(self, to, subject, html, text=None):
        msg = Message(subject, sender=self.sender, recipients=[to])
        msg.html = html
        if text:
            msg.body = text
        try:
            mail.send(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f'SMTP delivery to {to} failed: {e}') from e


class ResendChannel:
    name = 'resend'

    def __init__(self, api_key, sender, timeout=15):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send(self, to, subject, html, text=None):
        if not self.api_key or not self.sender:
            raise MailDeliveryError('Email is not configured (missing RESEND_API_KEY/RESEND_FROM_EMAIL)')
        payload = {
            'from': self.sender,
            'to': [to],
            'subject': subject,
            'html': html,
            'headers': {'X-Entity-Ref-ID': uuid.uuid4().hex},
        }
        if text:
            payload['text'] = text
        try:
            response = requests.post(
                RESEND_API_URL,
                json=payload,
                headers={'Authorization': f'Bearer {self.api_key}', 'Accept': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            raise MailDeliveryError(f'Resend rejected email (HTTP {e.response.status_code}): {e.response.text}') from e
        except requests.RequestException as e:
            raise MailDeliveryError(f'Resend request failed: {e}') from e


class ConsoleChannel:
    """Writes outgoing mail to the log instead of delivering it."""
    name = 'console'

    def send(self, to, subject, html, text=None):
        logger.info('Email to %s | %s\n%s', to, subject, text or html)


class Mailer:
    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        app.extensions['mailer'] = self.build_channel(app.config)

    @staticmethod
    def build_channel(config):
        channel = config['MAIL_CHANNEL']
        if channel == 'smtp':
            return SmtpChannel(config['MAIL_DEFAULT_SENDER'])
        if channel == 'resend':
            return ResendChannel(config.get('RESEND_API_KEY'), config.get('RESEND_FROM_EMAIL'))
        if channel == 'console':
            return ConsoleChannel()
        raise RuntimeError(f'Unknown MAIL_CHANNEL: {channel!r}')

    @property
    def channel(self):
        return current_app.extensions['mailer']

    def send(self, to, subject, html, text=None):
        self.channel.send(to, subject, html, text)
        logger.info('Email "%s" sent to %s via %s', subject, to, self.channel.name)


mailer = Mailer()


def send_otp_email(email, code, ttl_minutes=10):
    app_name = current_app.config['APP_NAME']
    html = render_template_string(otp_email_template, otp=code, ttl_minutes=ttl_minutes, app_name=app_name)
    text = f'Your verification code is {code}. It expires in {ttl_minutes} minutes.'
    mailer.send(email, 'Verify Your Email - OTP Code', html, text)


def send_welcome_email(email, name):
    app_name = current_app.config['APP_NAME']
    html = render_template_string(
        welcome_email_template,
        name=name,
        app_name=app_name,
        frontend_url=current_app.config.get('WELCOME_URL'),
    )
    text = f'Hi {name}, welcome to {app_name}! Your account has been verified.'
    mailer.send(email, f'Welcome to {app_name}!', html, text)
