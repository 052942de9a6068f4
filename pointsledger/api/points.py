"""
Points API endpoints.

Handles:
- Recording purchases (earn)
- Redemptions
- Balance and history queries

Thin adapter: parses requests and calls the ledger engine. Ledger errors
are turned into responses by the app-level handler in create_app.
"""
from datetime import datetime, timedelta
from flask import Blueprint, request, jsonify, current_app

from ..services import get_ledger_engine
from ..utils.clock import utcnow
from ..utils.errors import bad_request

points_bp = Blueprint('points', __name__)


def _parse_datetime(value, end_of_day=False):
    """Parse an ISO date/datetime value; None when absent.

    A bare date used as an upper bound covers the whole day.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f'Expected an ISO date string, got {type(value).__name__}')
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if end_of_day and len(value) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


# ==============================================================================
# MUTATIONS
# ==============================================================================

@points_bp.route('/transactions', methods=['POST'])
def record_transaction():
    """
    Record a purchase and credit its points.

    Request body:
        user_id: User ID (required)
        transaction_id: Caller's purchase id, used for idempotency (required)
        transaction_amount: Purchase amount (required)
        category: Purchase category (required)
        transaction_date: When the purchase happened (ISO, optional)
        product_code: Purchased product (optional)

    Returns:
        201 with points earned, or 200 when the transaction was already recorded
    """
    data = _json_body()
    if data is None:
        return bad_request('Request body must be a JSON object')

    user_id = data.get('user_id')
    if not isinstance(user_id, int):
        return bad_request('user_id is required')

    try:
        occurred_at = _parse_datetime(data.get('transaction_date'))
    except ValueError:
        return bad_request('transaction_date must be an ISO date')

    engine = get_ledger_engine()
    result = engine.earn(
        user_id=user_id,
        external_reference=data.get('transaction_id'),
        amount=data.get('transaction_amount'),
        category=data.get('category'),
        occurred_at=occurred_at,
        product_code=data.get('product_code')
    )

    if result.already_processed:
        message = 'Transaction already recorded'
        status = 200
    else:
        message = 'Transaction recorded successfully'
        status = 201

    return jsonify({
        'success': True,
        'message': message,
        'data': result.to_dict()
    }), status


@points_bp.route('/redeem', methods=['POST'])
def redeem_points():
    """
    Redeem points from the user's balance.

    Request body:
        user_id: User ID (required)
        points: Points to redeem (required, positive integer)
    """
    data = _json_body()
    if data is None:
        return bad_request('Request body must be a JSON object')

    user_id = data.get('user_id')
    if not isinstance(user_id, int):
        return bad_request('user_id is required')

    engine = get_ledger_engine()
    result = engine.redeem(user_id=user_id, amount=data.get('points'))

    current_app.logger.info(f"Redemption {result.redemption_id} completed for user {user_id}")

    return jsonify({
        'success': True,
        'message': 'Points redeemed successfully',
        'data': {
            'remaining_points': result.balance,
            'points_redeemed': result.points_redeemed,
            'redemption_id': result.redemption_id,
            'lot_ids': result.lot_ids
        }
    })


# ==============================================================================
# QUERIES
# ==============================================================================

@points_bp.route('/balance', methods=['GET'])
def get_points_balance():
    """
    Get a user's points balance.

    Query params:
        user_id: User ID (required)
        expiring_days: Window for the expiring-soon total (default 30)
    """
    user_id = request.args.get('user_id', type=int)
    if not user_id:
        return bad_request('user_id is required')

    expiring_days = request.args.get('expiring_days', 30, type=int)

    summary = get_ledger_engine().balance_summary(user_id, within_days=expiring_days)
    return jsonify({
        **summary.to_dict(),
        'as_of': utcnow().isoformat()
    })


@points_bp.route('/history', methods=['GET'])
def get_points_history():
    """
    Get a user's points history (paginated, oldest first).

    Query params:
        user_id: User ID (required)
        transaction_type: Filter by kind (earn, redeem, expire)
        start_date: Filter from date (ISO format)
        end_date: Filter to date (ISO format)
        page: Page number (default 1)
        per_page: Items per page (default 20, max 100)
    """
    user_id = request.args.get('user_id', type=int)
    if not user_id:
        return bad_request('user_id is required')

    try:
        start = _parse_datetime(request.args.get('start_date'))
        end = _parse_datetime(request.args.get('end_date'), end_of_day=True)
    except ValueError:
        return bad_request('start_date and end_date must be ISO dates')

    page = max(request.args.get('page', 1, type=int), 1)
    per_page = min(max(request.args.get('per_page', 20, type=int), 1), 100)

    entries = get_ledger_engine().history(
        user_id,
        kind=request.args.get('transaction_type'),
        start=start,
        end=end,
        limit=per_page,
        offset=(page - 1) * per_page
    )

    return jsonify({
        'user_id': user_id,
        'entries': [entry.to_dict() for entry in entries],
        'page': page,
        'per_page': per_page
    })
