from __future__ import annotations

import os

from flask import Flask, jsonify, request

from config import BaseConfig, config_by_name
from models import db
from services.borrowing import BorrowingService
from services.errors import BorrowServiceError, ConstraintViolationError, NotFoundError, ValidationError
from services.store import BookStore, UserStore, unit_of_work


def _load_config(app: Flask, config_name: str | None, test_config: dict | None) -> None:
    resolved_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_cls = config_by_name.get(resolved_name, BaseConfig)
    app.config.from_object(config_cls)
    if test_config:
        app.config.update(test_config)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('request body must be a JSON object')
    return data


def _int_field(data: dict, name: str, required: bool = True):
    value = data.get(name)
    if value is None:
        if required:
            raise ValidationError(f'{name} is required')
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{name} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{name} must be an integer') from exc


def create_app(config_name: str | None = None, test_config: dict | None = None):
    if isinstance(config_name, dict) and test_config is None:
        test_config = config_name
        config_name = None
    app = Flask(__name__)
    _load_config(app, config_name, test_config)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    db.init_app(app)
    borrowing_service = BorrowingService()
    users = UserStore()
    books = BookStore()

    @app.errorhandler(BorrowServiceError)
    def handle_service_error(exc: BorrowServiceError):
        body = {'error': str(exc), 'kind': exc.kind}
        if isinstance(exc, ConstraintViolationError):
            body['constraint'] = {
                'kind': exc.constraint_kind,
                'table': exc.table,
                'column': exc.column,
                'name': exc.constraint,
            }
        return jsonify(body), exc.status_code

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('Cache-Control', 'no-store')
        return response

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    @app.route('/api/users', methods=['POST'])
    def create_user():
        data = _payload()
        fields = {k: data.get(k) for k in UserStore.FIELDS if k in data}
        with unit_of_work():
            user = users.create(**fields)
        return jsonify(user.to_dict()), 201

    @app.route('/api/users/<int:user_id>', methods=['GET'])
    def get_user(user_id: int):
        user = users.find_by_id(user_id)
        if not user:
            raise NotFoundError(f'user {user_id} not found')
        return jsonify(user.to_dict())

    @app.route('/api/users/<int:user_id>', methods=['DELETE'])
    def delete_user(user_id: int):
        with unit_of_work():
            deleted = users.delete(user_id)
        if not deleted:
            raise NotFoundError(f'user {user_id} not found')
        return '', 204

    @app.route('/api/users/<int:user_id>/borrowings', methods=['GET'])
    def user_borrowings(user_id: int):
        items = borrowing_service.user_borrowings(user_id)
        return jsonify([b.to_dict() for b in items])

    @app.route('/api/books', methods=['POST'])
    def create_book():
        data = _payload()
        fields = {k: data.get(k) for k in BookStore.FIELDS if k in data}
        with unit_of_work():
            book = books.create(**fields)
        return jsonify(book.to_dict()), 201

    @app.route('/api/books/<int:book_id>', methods=['GET'])
    def get_book(book_id: int):
        book = books.find_by_id(book_id)
        if not book:
            raise NotFoundError(f'book {book_id} not found')
        return jsonify(book.to_dict())

    @app.route('/api/borrowings', methods=['POST'])
    def api_borrow():
        data = _payload()
        borrowing = borrowing_service.borrow(
            _int_field(data, 'user_id'),
            _int_field(data, 'book_id'),
            _int_field(data, 'loan_days', required=False),
        )
        return jsonify(borrowing.to_dict()), 201

    @app.route('/api/borrowings/<int:borrowing_id>/return', methods=['POST'])
    def api_return(borrowing_id: int):
        borrowing_service.return_book(borrowing_id)
        borrowing = borrowing_service.borrowings.find_by_id(borrowing_id)
        return jsonify(borrowing.to_dict())

    @app.route('/api/borrowings/<int:borrowing_id>/fine', methods=['GET'])
    def api_fine(borrowing_id: int):
        fine = borrowing_service.calculate_fine(borrowing_id)
        return jsonify({'borrowing_id': borrowing_id, 'fine': str(fine)})

    @app.route('/api/borrowings/overdue', methods=['GET'])
    def api_overdue():
        return jsonify([b.to_dict() for b in borrowing_service.overdue_borrowings()])

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=True)
