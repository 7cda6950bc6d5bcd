"""Email alerts for new contact and estimate submissions.

Mailgun is tried first when both MAILGUN_API_KEY and MAILGUN_DOMAIN are set,
then SMTP when SMTP_HOST is set. A transport returns None when it is not
configured so the next one gets a chance; True or False is final.
"""
import base64
import mimetypes
import os
import smtplib
import urllib.error
import urllib.parse
import urllib.request
from email.message import EmailMessage

from flask import current_app, has_request_context, request

from .images import image_file_path

MAILGUN_ENDPOINT = 'https://api.mailgun.net/v3/{domain}/messages'
MAILGUN_TIMEOUT_SECONDS = 15
SMTP_TIMEOUT_SECONDS = 12
NOT_PROVIDED = 'Not provided'


def _header_safe(value, max_length=240):
    # CR/LF would let a visitor inject extra headers.
    return ' '.join((value or '').split())[:max_length]


def _recipients():
    found = {}
    for item in (current_app.config.get('CONTACT_NOTIFICATION_EMAILS') or '').split(','):
        address = _header_safe(item, max_length=320)
        if address:
            found.setdefault(address.lower(), address)
    return list(found.values())


def _base_url():
    configured = (current_app.config.get('APP_BASE_URL') or '').rstrip('/')
    if configured or not has_request_context():
        return configured
    return (request.host_url or '').rstrip('/')


def _admin_link(request_id):
    return f"Admin URL: {_base_url()}/admin/requests/{request_id}"


def _attachment_paths(image_paths):
    images_root = current_app.config.get('IMAGES_FOLDER')
    paths = (image_file_path(image_path, images_root) for image_path in image_paths or [])
    return [path for path in paths if path and os.path.isfile(path)]


def _mailgun(subject, body, recipients, sender, attachments):
    config = current_app.config
    api_key = (config.get('MAILGUN_API_KEY') or '').strip()
    domain = (config.get('MAILGUN_DOMAIN') or '').strip()
    if not (api_key and domain):
        return None

    payload = urllib.parse.urlencode({
        'from': sender,
        'to': ', '.join(recipients),
        'subject': subject,
        'text': body,
    }).encode('utf-8')
    req = urllib.request.Request(MAILGUN_ENDPOINT.format(domain=domain), data=payload, method='POST')
    token = base64.b64encode(f'api:{api_key}'.encode()).decode()
    req.add_header('Authorization', f'Basic {token}')
    try:
        with urllib.request.urlopen(req, timeout=MAILGUN_TIMEOUT_SECONDS):  # nosec B310
            pass
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode('utf-8', errors='replace')
        current_app.logger.error('Mailgun rejected message (%s): %s', exc.code, detail)
        return False
    except Exception:
        current_app.logger.exception('Mailgun email delivery failed.')
        return False
    current_app.logger.info('Notification sent through Mailgun to %d recipient(s).', len(recipients))
    return True


def _build_message(subject, body, recipients, sender, attachments):
    message = EmailMessage()
    message['Subject'] = subject
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message.set_content(body)
    for path in attachments:
        maintype, subtype = (mimetypes.guess_type(path)[0] or 'application/octet-stream').split('/', 1)
        with open(path, 'rb') as handle:
            message.add_attachment(handle.read(), maintype=maintype, subtype=subtype, filename=os.path.basename(path))
    return message


def _smtp(subject, body, recipients, sender, attachments):
    config = current_app.config
    host = (config.get('SMTP_HOST') or '').strip()
    if not host:
        return None

    port = int(config.get('SMTP_PORT') or 587)
    use_ssl = bool(config.get('SMTP_USE_SSL'))
    username = config.get('SMTP_USERNAME') or ''
    password = config.get('SMTP_PASSWORD') or ''
    try:
        message = _build_message(subject, body, recipients, sender, attachments)
        smtp_class = smtplib.SMTP_SSL if use_ssl else smtplib.SMTP
        with smtp_class(host=host, port=port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
            if config.get('SMTP_USE_TLS') and not use_ssl:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
    except Exception:
        current_app.logger.exception('SMTP email delivery failed.')
        return False
    current_app.logger.info('Notification sent through SMTP to %d recipient(s).', len(recipients))
    return True


TRANSPORTS = (_mailgun, _smtp)


def send_email(subject, body, attachments=None):
    """Deliver to CONTACT_NOTIFICATION_EMAILS; False when nobody is configured or delivery fails."""
    recipients = _recipients()
    if not recipients:
        return False

    sender = _header_safe(current_app.config.get('MAIL_FROM') or 'no-reply@localhost', max_length=254)
    subject = _header_safe(subject)
    for transport in TRANSPORTS:
        result = transport(subject, body, recipients, sender, attachments or [])
        if result is not None:
            return result

    current_app.logger.warning('No email provider configured (set MAILGUN_API_KEY+MAILGUN_DOMAIN or SMTP_HOST).')
    return False


def _visitor_name(submission):
    return _header_safe(submission.name, max_length=120) or 'Website visitor'


def send_contact_notification(contact_request):
    body = "\n".join([
        "A new contact form submission has been received.",
        "",
        f"Name: {contact_request.name}",
        f"Email: {contact_request.email}",
        f"Phone: {contact_request.phone or NOT_PROVIDED}",
        "",
        "Message:",
        contact_request.message or "",
        "",
        _admin_link(contact_request.id),
    ])
    return send_email(f"New Contact Form Submission from {_visitor_name(contact_request)}", body)


def send_estimate_notification(estimate_request):
    images = list(estimate_request.images or [])
    base_url = _base_url()
    lines = [
        "A new estimate request has been received.",
        "",
        f"Name: {estimate_request.name}",
        f"Email: {estimate_request.email}",
        f"Phone: {estimate_request.phone or NOT_PROVIDED}",
        f"Address: {estimate_request.address or NOT_PROVIDED}",
        "",
        "Description:",
        estimate_request.description or "",
        "",
        f"Attached Images ({len(images)}):",
    ]
    lines += [f"{number}. {base_url}{path}" for number, path in enumerate(images, start=1)]
    lines += ["", _admin_link(estimate_request.id)]
    return send_email(
        f"New Estimate Request from {_visitor_name(estimate_request)}",
        "\n".join(lines),
        attachments=_attachment_paths(images),
    )
