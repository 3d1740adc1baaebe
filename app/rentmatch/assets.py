import logging
import os
import uuid

import boto3
from flask import current_app
from werkzeug.utils import secure_filename

from . import db
from .errors import NotFound, ValidationError
from .models import AgentAsset, AgentFolder

STORAGE_LIMIT = 50 * 1024 * 1024
ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp', 'mp4', 'mov', 'pdf', 'doc', 'docx'}


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def format_bytes(size):
    if not size:
        return '0 B'
    units = ['B', 'KB', 'MB', 'GB']
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def _s3():
    return boto3.client('s3')


def create_folder(agent, name, location=None):
    name = (name or '').strip()
    if not name:
        raise ValidationError('Folder name is required')
    folder = AgentFolder(agent_id=agent.id, name=name, location=(location or '').strip() or None)
    db.session.add(folder)
    db.session.commit()
    return folder


def list_folders(agent):
    folders = AgentFolder.query.filter_by(agent_id=agent.id).order_by(AgentFolder.created_at.desc()).all()
    return [
        {
            'id': f.id,
            'name': f.name,
            'location': f.location,
            'asset_count': AgentAsset.query.filter_by(folder_id=f.id).count(),
        }
        for f in folders
    ]


def list_assets(agent, folder_id=None, limit=None):
    query = AgentAsset.query.filter_by(agent_id=agent.id)
    if folder_id is not None:
        query = query.filter_by(folder_id=folder_id)
    query = query.order_by(AgentAsset.created_at.desc(), AgentAsset.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def storage_usage(agent):
    assets = AgentAsset.query.filter_by(agent_id=agent.id).all()
    total = sum(a.file_size or 0 for a in assets)
    images = sum(1 for a in assets if (a.file_type or '').startswith('image'))
    videos = sum(1 for a in assets if (a.file_type or '').startswith('video'))
    return {
        'total_used': total,
        'limit': STORAGE_LIMIT,
        'percentage': round(total / STORAGE_LIMIT * 100, 2),
        'total_used_display': format_bytes(total),
        'limit_display': format_bytes(STORAGE_LIMIT),
        'image_count': images,
        'video_count': videos,
        'document_count': len(assets) - images - videos,
    }


def upload_asset(agent, file, folder_id=None):
    if not file or not file.filename:
        raise ValidationError('No file selected')
    if not allowed_file(file.filename):
        raise ValidationError('File type not allowed')
    if folder_id is not None and not AgentFolder.query.filter_by(id=folder_id, agent_id=agent.id).first():
        raise NotFound('Folder not found')

    file.stream.seek(0, os.SEEK_END)
    size = file.stream.tell()
    file.stream.seek(0)
    used = storage_usage(agent)['total_used']
    if used + size > STORAGE_LIMIT:
        raise ValidationError(f'Storage limit reached ({format_bytes(STORAGE_LIMIT)})')

    filename = secure_filename(file.filename)
    bucket = current_app.config['ASSETS_BUCKET']
    key = f"agents/{agent.id}/{uuid.uuid4().hex}_{filename}"
    _s3().upload_fileobj(file.stream, bucket, key, ExtraArgs={'ContentType': file.mimetype or 'application/octet-stream'})

    asset = AgentAsset(
        agent_id=agent.id,
        folder_id=folder_id,
        file_name=filename,
        file_size=size,
        file_type=file.mimetype,
        storage_key=key,
        url=f"https://{bucket}.s3.amazonaws.com/{key}",
    )
    db.session.add(asset)
    db.session.commit()
    logging.info("[ASSETS] agent=%s uploaded %s (%s)", agent.id, filename, format_bytes(size))
    return asset


def download_url(asset, expires_in=3600):
    return _s3().generate_presigned_url(
        'get_object',
        Params={'Bucket': current_app.config['ASSETS_BUCKET'], 'Key': asset.storage_key},
        ExpiresIn=expires_in,
    )


def get_asset(agent, asset_id):
    asset = AgentAsset.query.filter_by(id=asset_id, agent_id=agent.id).first()
    if not asset:
        raise NotFound('File not found')
    return asset


def delete_asset(agent, asset_id):
    asset = get_asset(agent, asset_id)
    file_name = asset.file_name
    _s3().delete_object(Bucket=current_app.config['ASSETS_BUCKET'], Key=asset.storage_key)
    db.session.delete(asset)
    db.session.commit()
    logging.info("[ASSETS] agent=%s deleted %s", agent.id, file_name)
