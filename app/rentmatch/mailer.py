import logging
import boto3
from flask import current_app


def _ses():
    return boto3.client('ses', region_name=current_app.config['AWS_REGION'])


def send_email(to, subject, body):
    """Send a plain-text email through Amazon SES."""
    _ses().send_email(
        Source=current_app.config['MAIL_FROM'],
        Destination={'ToAddresses': [to]},
        Message={
            'Subject': {'Data': subject},
            'Body': {'Text': {'Data': body}},
        },
    )
    logging.info("[MAIL] sent '%s'", subject)
