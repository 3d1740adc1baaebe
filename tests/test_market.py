import pytest
from app.rentmatch.views import market_summary
from types import SimpleNamespace


def make_lead(location, budget, contacts=0, views=0, status='active'):
    return SimpleNamespace(location=location, budget=budget, contacts=contacts, views=views, status=status)


def test_market_summary_basic(app):
    items = [
        make_lead('Kilimani', 30000, contacts=1, views=4),
        make_lead('kilimani', 50000, views=2),
        make_lead('Westlands', 80000, contacts=3, views=9, status='sold_out'),
    ]
    result = market_summary(items)
    assert result['total_leads'] == 3
    assert result['sold_out'] == 1
    assert result['median_budget'] == 50000
    kilimani = result['locations'][0]
    assert kilimani['location'] == 'Kilimani'
    assert kilimani['count'] == 2
    assert kilimani['median_budget'] == 40000
    assert kilimani['p25_budget'] == 35000
    assert kilimani['unlock_rate'] == 0.5
    assert kilimani['avg_views'] == 3


def test_market_summary_empty(app):
    assert market_summary([]) == {'total_leads': 0, 'sold_out': 0, 'median_budget': 0, 'locations': []}


def test_market_summary_without_budgets(app):
    result = market_summary([make_lead(None, None)])
    assert result['locations'][0]['location'] == 'Unknown'
    assert result['locations'][0]['median_budget'] == 0


def test_admin_market_and_export(client, admin_user, login_as, make_lead):
    make_lead(location='Kilimani', budget=30000)
    make_lead(location='Runda', budget=150000)
    login_as(admin_user)
    body = client.get('/api/admin/market').get_json()
    assert body['total_leads'] == 2
    assert body['median_budget'] == pytest.approx(90000)

    resp = client.get('/api/admin/export')
    assert resp.status_code == 200
    assert resp.headers['Content-Type'].startswith('text/csv')
    lines = resp.get_data(as_text=True).strip().splitlines()
    assert lines[0].startswith('ID,Location,Property Type,Budget')
    assert len(lines) == 3


def test_hidden_leads_leave_the_marketplace(client, admin_user, agent, login_as, make_lead):
    lead = make_lead()
    login_as(admin_user)
    assert client.post(f'/api/admin/leads/{lead.id}/visibility').status_code == 200
    login_as(agent)
    assert client.get('/api/leads').get_json()['count'] == 0
