# 数据表结构定义
# 金额字段统一为整数最小货币单位

TABLES = [
    # 1. 用户表（users）
    ("users", """
    CREATE TABLE IF NOT EXISTS users (
        user_id INTEGER PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        phone VARCHAR(32) UNIQUE,
        role VARCHAR(20) NOT NULL DEFAULT 'user',   -- user/business/driver/admin
        status VARCHAR(20) DEFAULT 'active',        -- active/suspended
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """),

    # 2. 商家表（businesses）
    ("businesses", """
    CREATE TABLE IF NOT EXISTS businesses (
        business_id INTEGER PRIMARY KEY,
        owner_user_id INTEGER NOT NULL,             -- 商家账号（收银员）用户ID
        name VARCHAR(100) NOT NULL,
        address TEXT,
        latitude REAL,
        longitude REAL,
        is_active BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (owner_user_id) REFERENCES users(user_id)
    )
    """),

    # 3. 商品表（products），ID为UUID
    ("products", """
    CREATE TABLE IF NOT EXISTS products (
        product_id VARCHAR(36) PRIMARY KEY,
        business_id INTEGER NOT NULL,
        name VARCHAR(100) NOT NULL,
        price INTEGER NOT NULL CHECK (price >= 0),
        is_available BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (business_id) REFERENCES businesses(business_id)
    )
    """),

    # 4. 司机表（drivers）
    ("drivers", """
    CREATE TABLE IF NOT EXISTS drivers (
        driver_id INTEGER PRIMARY KEY,
        user_id INTEGER UNIQUE NOT NULL,
        vehicle_type VARCHAR(32),
        current_latitude REAL,
        current_longitude REAL,
        is_available BOOLEAN DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id)
    )
    """),

    # 5. 订阅表（subscriptions）
    ("subscriptions", """
    CREATE TABLE IF NOT EXISTS subscriptions (
        subscription_id INTEGER PRIMARY KEY,
        user_id INTEGER NOT NULL,
        app_type VARCHAR(32) NOT NULL,              -- go/pass_go/care_go/...
        status VARCHAR(20) DEFAULT 'active',        -- active/expired/cancelled
        starts_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        ends_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id)
    )
    """),

    # 6. 预约表（reservations）
    ("reservations", """
    CREATE TABLE IF NOT EXISTS reservations (
        reservation_id INTEGER PRIMARY KEY,
        user_id INTEGER NOT NULL,
        business_id INTEGER NOT NULL,
        reserved_for TIMESTAMP NOT NULL,
        party_size INTEGER DEFAULT 1,
        status VARCHAR(20) DEFAULT 'pending',       -- pending/confirmed/completed/cancelled
        qr_code VARCHAR(32),
        completed_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id),
        FOREIGN KEY (business_id) REFERENCES businesses(business_id)
    )
    """),

    # 7. 订单表（orders）
    ("orders", """
    CREATE TABLE IF NOT EXISTS orders (
        order_id INTEGER PRIMARY KEY,
        order_number VARCHAR(32) UNIQUE NOT NULL,   -- ORD-YYYYMMDD-NNNN
        user_id INTEGER NOT NULL,
        driver_id INTEGER,
        order_type VARCHAR(20) NOT NULL,            -- delivery/pickup
        payment_method VARCHAR(20) NOT NULL,        -- cash/online/wallet
        payment_status VARCHAR(20) DEFAULT 'pending', -- pending/paid/refunded
        status VARCHAR(20) DEFAULT 'pending',
        delivery_address TEXT,                      -- JSON
        distance_km REAL,
        business_count INTEGER DEFAULT 1,
        total_amount INTEGER NOT NULL,
        discount_amount INTEGER DEFAULT 0,
        delivery_fee INTEGER DEFAULT 0,
        platform_fee INTEGER DEFAULT 0,
        final_amount INTEGER NOT NULL CHECK (final_amount >= 0),
        coupon_code VARCHAR(32),
        subscription_applied BOOLEAN DEFAULT FALSE,
        qr_code VARCHAR(32),
        notes TEXT,
        cancellation_fee INTEGER DEFAULT 0,
        cancel_reason TEXT,
        cancelled_at TIMESTAMP,
        picked_up_at TIMESTAMP,
        actual_delivery_time TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id),
        FOREIGN KEY (driver_id) REFERENCES drivers(driver_id)
    )
    """),

    # 8. 订单项表（order_items），下单时快照
    ("order_items", """
    CREATE TABLE IF NOT EXISTS order_items (
        order_item_id INTEGER PRIMARY KEY,
        order_id INTEGER NOT NULL,
        product_id VARCHAR(36) NOT NULL,
        business_id INTEGER NOT NULL,
        product_name VARCHAR(100),
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        unit_price INTEGER NOT NULL,
        total_price INTEGER NOT NULL,
        add_ons TEXT,                               -- JSON: [{"name":..., "price":...}]
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (order_id) REFERENCES orders(order_id) ON DELETE CASCADE
    )
    """),

    # 9. 钱包表（wallets），每个用户一个
    ("wallets", """
    CREATE TABLE IF NOT EXISTS wallets (
        wallet_id INTEGER PRIMARY KEY,
        user_id INTEGER UNIQUE NOT NULL,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        currency VARCHAR(8) DEFAULT 'EGP',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id)
    )
    """),

    # 10. 交易表（transactions），只追加；wallet_id 非空即钱包流水
    ("transactions", """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id INTEGER PRIMARY KEY,
        transaction_no VARCHAR(32) UNIQUE NOT NULL, -- TXN{YYYYMMDD}{seq}
        user_id INTEGER NOT NULL,
        wallet_id INTEGER,
        transaction_type VARCHAR(20) NOT NULL,      -- payment/refund/wallet_topup/discount/earnings
        reference_type VARCHAR(20),                 -- order/reservation/wallet
        reference_id INTEGER,
        amount INTEGER NOT NULL,                    -- 带符号，负数表示支出
        balance_before INTEGER,
        balance_after INTEGER,
        payment_method VARCHAR(20),
        gateway_reference VARCHAR(64),
        status VARCHAR(20) DEFAULT 'completed',     -- pending/completed/failed/refunded
        description VARCHAR(200),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id),
        FOREIGN KEY (wallet_id) REFERENCES wallets(wallet_id)
    )
    """),

    # 11. 积分流水表（points），只追加
    ("points", """
    CREATE TABLE IF NOT EXISTS points (
        points_id INTEGER PRIMARY KEY,
        user_id INTEGER NOT NULL,
        points_earned INTEGER DEFAULT 0,
        points_spent INTEGER DEFAULT 0,
        balance INTEGER NOT NULL CHECK (balance >= 0), -- 本条记录后的余额快照
        activity_type VARCHAR(32) NOT NULL,         -- order_completed/reservation_completed/redemption/expiry/...
        reference_id INTEGER,
        description VARCHAR(200),
        expires_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users(user_id)
    )
    """),

    # 12. 二维码表（qr_codes）
    ("qr_codes", """
    CREATE TABLE IF NOT EXISTS qr_codes (
        qr_id INTEGER PRIMARY KEY,
        token VARCHAR(32) UNIQUE NOT NULL,
        qr_type VARCHAR(20) NOT NULL,               -- discount/payment/reservation/order/driver_pickup
        reference_id INTEGER,
        user_id INTEGER,
        business_id INTEGER,
        driver_id INTEGER,
        metadata TEXT,                              -- JSON
        expires_at TIMESTAMP NOT NULL,
        is_used BOOLEAN DEFAULT FALSE,
        used_at TIMESTAMP,
        used_by INTEGER,
        scan_count INTEGER DEFAULT 0,
        last_scanned_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """),
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_businesses_owner ON businesses(owner_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_products_business ON products(business_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_driver_id ON orders(driver_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_business ON order_items(business_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_wallet ON transactions(wallet_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_reference ON transactions(reference_type, reference_id)",
    "CREATE INDEX IF NOT EXISTS idx_points_user ON points(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_qr_codes_reference ON qr_codes(qr_type, reference_id)",
]

CORE_TABLES = [name for name, _ in TABLES]
