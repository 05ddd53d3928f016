from app import app
from models import (db, User, Branch, DiningTable, Category, MenuItem, Modifier, ProductVariant,
                    StockItem, StockMovement, Recipe)
import settings_service

DEMO_BRANCH = {
    'name': 'Dar Tajine Restaurant',
    'code': 'CAS',
    'address': '123 Avenue Mohammed V, Casablanca, Morocco',
    'phone': '+212 522 000 000'
}

# username, password, full name, role, pin
DEMO_USERS = [
    ('owner', 'owner123', 'Restaurant Owner', 'owner', None),
    ('admin', 'admin123', 'System Administrator', 'admin', '0000'),
    ('manager', 'manager123', 'Restaurant Manager', 'manager', '1111'),
    ('cashier', 'cashier123', 'Cashier One', 'cashier', '2222'),
    ('kitchen', 'kitchen123', 'Kitchen Staff', 'kitchen', '3333'),
]

CATEGORIES = ['Appetizers', 'Traditional Tagines', 'Couscous', 'Grilled Meats',
              'Desserts', 'Beverages', 'Fresh Juices']

# name, description, price, sku, category
MENU_ITEMS = [
    ('Harira Soup', 'Traditional Moroccan tomato and lentil soup', 25.00, 'APP001', 'Appetizers'),
    ('Zaalouk', 'Grilled eggplant and tomato salad', 30.00, 'APP002', 'Appetizers'),
    ('Chicken Tagine with Olives', 'Tender chicken with preserved lemons and green olives', 95.00, 'TAG001', 'Traditional Tagines'),
    ('Lamb Tagine with Prunes', 'Slow-cooked lamb with dried prunes and almonds', 110.00, 'TAG002', 'Traditional Tagines'),
    ('Couscous with Vegetables', 'Traditional couscous with seasonal vegetables', 65.00, 'COUS001', 'Couscous'),
    ('Grilled Chicken', 'Marinated chicken breast with herbs', 75.00, 'GRILL002', 'Grilled Meats'),
    ('Baklava', 'Layered phyllo pastry with nuts and honey', 35.00, 'DES001', 'Desserts'),
    ('Mint Tea', 'Traditional Moroccan mint tea', 15.00, 'BEV003', 'Beverages'),
    ('Moroccan Coffee', 'Traditional Moroccan coffee', 20.00, 'BEV001', 'Beverages'),
    ('Sparkling Water', 'Bottled sparkling water', 10.00, 'BEV002', 'Beverages'),
    ('Orange Juice', 'Freshly squeezed orange juice', 25.00, 'JUICE001', 'Fresh Juices'),
]

MODIFIERS = {
    'Grilled Chicken': [('Extra sauce', 5.00), ('Side of fries', 12.00)],
    'Chicken Tagine with Olives': [('Extra bread', 3.00)],
    'Mint Tea': [('Extra sugar', 0.00), ('No sugar', 0.00)],
}

VARIANTS = {
    'Orange Juice': [('Small', -5.00), ('Medium', 0.00), ('Large', 8.00)],
    'Moroccan Coffee': [('Single', 0.00), ('Double', 6.00)],
}

# name, sku, quantity, unit, min threshold
STOCK_ITEMS = [
    ('Chicken', 'ING-CHK', 20.0, 'kg', 5.0),
    ('Lamb', 'ING-LMB', 12.0, 'kg', 4.0),
    ('Couscous', 'ING-CSC', 15.0, 'kg', 3.0),
    ('Oranges', 'ING-ORG', 40.0, 'kg', 8.0),
    ('Coffee Beans', 'ING-COF', 5.0, 'kg', 1.0),
    ('Mint', 'ING-MNT', 3.0, 'kg', 0.5),
    ('Sparkling Water Bottle', 'ING-SPW', 48.0, 'pieces', 12.0),
]

# menu item -> [(stock item, qty per serving)]
RECIPES = {
    'Chicken Tagine with Olives': [('Chicken', 0.35)],
    'Grilled Chicken': [('Chicken', 0.30)],
    'Lamb Tagine with Prunes': [('Lamb', 0.35)],
    'Couscous with Vegetables': [('Couscous', 0.20)],
    'Orange Juice': [('Oranges', 0.50)],
    'Moroccan Coffee': [('Coffee Beans', 0.02)],
    'Mint Tea': [('Mint', 0.01)],
    'Sparkling Water': [('Sparkling Water Bottle', 1)],
}


def seed_demo_data():
    branch = Branch(**DEMO_BRANCH)
    db.session.add(branch)
    db.session.flush()

    for username, password, full_name, role, pin in DEMO_USERS:
        user = User(username=username, full_name=full_name, role=role,
                    branch_id=None if role == 'owner' else branch.id, is_active=True)
        user.set_password(password)
        user.set_pin(pin)
        db.session.add(user)
        db.session.flush()
        if role == 'owner':
            branch.owner_id = user.id

    for i in range(1, 26):
        area = 'Indoor' if i <= 20 else 'Outdoor Terrace'
        db.session.add(DiningTable(branch_id=branch.id, table_number=f'T{i}', capacity=4,
                                   description=f'Table {i} - {area}'))

    categories = {}
    for position, name in enumerate(CATEGORIES, start=1):
        categories[name] = Category(branch_id=branch.id, name=name, position=position)
        db.session.add(categories[name])
    db.session.flush()

    items = {}
    for name, description, price, sku, category in MENU_ITEMS:
        item = MenuItem(branch_id=branch.id, category_id=categories[category].id, name=name,
                        description=description, price=price, sku=sku, is_available=True)
        for modifier_name, extra in MODIFIERS.get(name, []):
            item.modifiers.append(Modifier(name=modifier_name, extra_price=extra))
        for order, (variant_name, adjustment) in enumerate(VARIANTS.get(name, [])):
            item.variants.append(ProductVariant(name=variant_name, price_adjustment=adjustment,
                                                sort_order=order))
        db.session.add(item)
        items[name] = item

    stock = {}
    for name, sku, quantity, unit, threshold in STOCK_ITEMS:
        stock[name] = StockItem(branch_id=branch.id, name=name, sku=sku, quantity=quantity,
                                unit=unit, min_threshold=threshold)
        db.session.add(stock[name])
    db.session.flush()
    for item in stock.values():
        db.session.add(StockMovement(stock_item_id=item.id, change=item.quantity, type='RESTOCK',
                                     reason='Opening stock'))

    for menu_name, lines in RECIPES.items():
        for stock_name, qty in lines:
            db.session.add(Recipe(menu_item_id=items[menu_name].id,
                                  stock_item_id=stock[stock_name].id, qty_per_serving=qty))

    for key, value in settings_service.DEFAULT_SETTINGS.items():
        settings_service.set_setting(key, value)
    settings_service.set_setting('tax_rate', 10, branch.id)

    db.session.commit()
    return branch


def init_database():
    with app.app_context():
        db.create_all()
        print("Database tables created successfully!")

        if Branch.query.filter_by(code=DEMO_BRANCH['code']).first():
            print(f"Branch {DEMO_BRANCH['code']} already exists, skipping demo data.")
            return

        branch = seed_demo_data()
        print(f"Demo branch {branch.name} ({branch.code}) created with 25 tables.")
        for username, password, _, role, pin in DEMO_USERS:
            extra = f", PIN {pin}" if pin else ''
            print(f"  {role:8s} login: username='{username}', password='{password}'{extra}")


if __name__ == '__main__':
    init_database()
