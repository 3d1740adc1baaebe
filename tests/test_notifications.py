import pytest
from app.rentmatch import db
from app.rentmatch.errors import NotFound
from app.rentmatch.notifications import list_notifications, mark_read, notify, unread_count


def test_notify_unknown_type_falls_back_to_system(tenant):
    n = notify(tenant.id, 'fireworks', 'Hello', 'World')
    db.session.commit()
    assert n.type == 'system'
    assert n.read is False


def test_unread_filter_and_mark_read(tenant, make_user):
    first = notify(tenant.id, 'system', 'One', 'first')
    notify(tenant.id, 'system', 'Two', 'second')
    stranger = make_user('stranger@example.com')
    db.session.commit()

    assert unread_count(tenant) == 2
    mark_read(tenant, first.id)
    assert [n.title for n in list_notifications(tenant, unread_only=True)] == ['Two']
    assert len(list_notifications(tenant)) == 2

    with pytest.raises(NotFound):
        mark_read(stranger, first.id)


def test_notification_endpoints(client, tenant, login_as):
    notify(tenant.id, 'lead_expired', 'Request Expired', 'Your rental request has expired.', {'lead_id': 7})
    notify(tenant.id, 'system', 'Welcome', 'Welcome to RentMatch')
    db.session.commit()
    login_as(tenant)

    body = client.get('/api/notifications').get_json()
    assert body['unread_count'] == 2
    expired = next(n for n in body['notifications'] if n['type'] == 'lead_expired')
    assert expired['data'] == {'lead_id': 7}

    assert client.post(f"/api/notifications/{expired['id']}/read").get_json()['notification']['read'] is True
    assert client.post('/api/notifications/read-all').get_json() == {'updated': 1}
    assert client.get('/api/notifications?filter=unread').get_json()['notifications'] == []
    assert client.post('/api/notifications/99999/read').status_code == 404
